# services/notifications.py
# ============================================================================
# TRUCKSY PAYMENTS — NOTIFICATION SENDERS
# ============================================================================
# WhatsApp-style text alerts and e-mail with an attached invoice.
# Senders raise on failure; callers (data hooks) decide to swallow.
# ============================================================================

import asyncio
import base64
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import httpx
import structlog
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Attachment, Disposition, FileContent, FileName, FileType, Mail

from config import Settings

logger = structlog.get_logger(component="notifications")


class ITextSender(ABC):

    @abstractmethod
    async def send_text(self, phone_number: str, message: str) -> None:
        pass


class IMailSender(ABC):

    @abstractmethod
    async def send_email_with_attachment(
        self,
        to: str,
        subject: str,
        html: str,
        filename: str,
        attachment: bytes,
    ) -> None:
        pass


# =============================================================================
# WHATSAPP
# =============================================================================

class WhatsAppSender(ITextSender):
    """Text messages through an UltraMsg-style HTTP API"""

    def __init__(
        self,
        api_url: str,
        token: str,
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self._token = token
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    async def close(self):
        await self._client.aclose()

    async def send_text(self, phone_number: str, message: str) -> None:
        response = await self._client.post(
            f"{self.api_url}/messages/chat",
            data={"token": self._token, "to": phone_number, "body": message},
        )
        response.raise_for_status()
        logger.info("whatsapp_sent", to=phone_number[-4:])


# =============================================================================
# SENDGRID
# =============================================================================

class SendGridMailSender(IMailSender):
    """E-mail through the SendGrid v3 API; the blocking client runs in a worker thread."""

    def __init__(
        self,
        api_key: str,
        mail_from: str = "no-reply@trucksy.app",
        client: Optional[SendGridAPIClient] = None,
    ):
        self.mail_from = mail_from
        self._client = client or SendGridAPIClient(api_key)

    def _build_message(self, to, subject, html, filename, attachment) -> Mail:
        message = Mail(
            from_email=self.mail_from,
            to_emails=to,
            subject=subject,
            html_content=html,
        )
        file_type = "text/html" if filename.endswith(".html") else "application/octet-stream"
        message.attachment = Attachment(
            FileContent(base64.b64encode(attachment).decode("ascii")),
            FileName(filename),
            FileType(file_type),
            Disposition("attachment"),
        )
        return message

    async def send_email_with_attachment(self, to, subject, html, filename, attachment) -> None:
        message = self._build_message(to, subject, html, filename, attachment)
        response = await asyncio.to_thread(self._client.send, message)
        logger.info("email_sent",
                    subject=subject,
                    attachment=filename,
                    status_code=response.status_code,
                    message_id=response.headers.get("X-Message-Id"))


# =============================================================================
# IN-MEMORY OUTBOX
# =============================================================================

@dataclass
class OutboxText:
    phone_number: str
    message: str


@dataclass
class OutboxMail:
    to: str
    subject: str
    html: str
    filename: str
    attachment: bytes = field(repr=False)


class InMemoryOutbox(ITextSender, IMailSender):
    """Collects messages instead of sending them (local runs and tests)."""

    def __init__(self):
        self.texts: list[OutboxText] = []
        self.mails: list[OutboxMail] = []

    async def send_text(self, phone_number: str, message: str) -> None:
        self.texts.append(OutboxText(phone_number, message))
        logger.info("text_queued_in_outbox", to=phone_number[-4:])

    async def send_email_with_attachment(self, to, subject, html, filename, attachment) -> None:
        self.mails.append(OutboxMail(to, subject, html, filename, attachment))
        logger.info("email_queued_in_outbox", subject=subject, attachment=filename)


def build_senders(settings: Settings) -> tuple[ITextSender, IMailSender]:
    """Real senders where configured, the in-memory outbox otherwise."""
    outbox: Optional[InMemoryOutbox] = None

    if settings.whatsapp_api_url and settings.whatsapp_token:
        text_sender: ITextSender = WhatsAppSender(settings.whatsapp_api_url, settings.whatsapp_token)
    else:
        outbox = InMemoryOutbox()
        text_sender = outbox

    if settings.sendgrid_api_key:
        mail_sender: IMailSender = SendGridMailSender(settings.sendgrid_api_key, mail_from=settings.mail_from)
    else:
        mail_sender = outbox or InMemoryOutbox()

    return text_sender, mail_sender
