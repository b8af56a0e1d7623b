"""
Structured logging setup
========================
One structlog configuration for every component. Components bind their own
context: ``structlog.get_logger().bind(component="reconciliation")``.
"""

import logging

import structlog


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog with JSON output at the given level."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def mask_card_number(number: str) -> str:
    """Keep only the last four digits of a card number for log output."""
    digits = "".join(ch for ch in str(number) if ch.isdigit())
    return f"****{digits[-4:]}" if digits else "****"
