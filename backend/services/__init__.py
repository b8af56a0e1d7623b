# services/__init__.py
# ============================================================================
# TRUCKSY PAYMENTS — SERVICES MODULE
# ============================================================================
# Notification senders, invoice documents and the hooks that use them
# ============================================================================

from services.notifications import (
    IMailSender,
    ITextSender,
    InMemoryOutbox,
    SendGridMailSender,
    WhatsAppSender,
    build_senders,
)

from services.data_hooks import NotificationHooks

__all__ = [
    # Senders
    "IMailSender",
    "ITextSender",
    "InMemoryOutbox",
    "SendGridMailSender",
    "WhatsAppSender",
    "build_senders",
    # Hooks
    "NotificationHooks",
]
