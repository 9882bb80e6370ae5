"""
Structured Logging

structlog wiring for the governance core:
- stdlib integration and level filtering
- ISO timestamps
- Contact PII (phone numbers, e-mail addresses) masked before rendering
"""

import logging
import re
import sys

import structlog

from phr_governance.config import GovernanceSettings, get_settings


_PII_PATTERNS = {
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    "phone": re.compile(r"(?:\+\d{1,3}[-\s]?)?\b\d{10}\b"),
}

_SKIP_KEYS = {"level", "logger", "timestamp"}


def redact_pii(text: str, replacement: str = "[REDACTED]") -> str:
    """Mask contact details in a log value."""
    for pattern in _PII_PATTERNS.values():
        text = pattern.sub(replacement, text)
    return text


def pii_redaction_processor(logger, method_name, event_dict):
    """Redact contact PII from log messages."""
    for key, value in event_dict.items():
        if isinstance(value, str) and key not in _SKIP_KEYS:
            event_dict[key] = redact_pii(value)
    return event_dict


def configure_logging(settings: GovernanceSettings | None = None) -> None:
    """Install the structlog processor chain. Safe to call more than once."""
    settings = settings or get_settings()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level, logging.INFO),
        force=True,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_json
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            pii_redaction_processor,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
