import logging

import pytest
import structlog

from phr_governance.config import GovernanceSettings
from phr_governance.observability import (
    configure_logging, pii_redaction_processor, redact_pii,
)


def test_redact_pii_masks_contact_details():
    text = "Notify priya.kumar@example.com at +91 9876543210"
    redacted = redact_pii(text)

    assert "priya.kumar@example.com" not in redacted
    assert "9876543210" not in redacted
    assert redacted.count("[REDACTED]") == 2


def test_redact_pii_leaves_ids_alone():
    assert redact_pii("cons-art-1a2b3c4d5e6f approved") == "cons-art-1a2b3c4d5e6f approved"


def test_processor_skips_reserved_keys():
    event = {
        "event": "Emergency contact added",
        "phone": "9876543210",
        "timestamp": "2026-01-01T00:00:00Z",
        "count": 3,
    }
    result = pii_redaction_processor(None, "info", event)

    assert result["phone"] == "[REDACTED]"
    assert result["timestamp"] == "2026-01-01T00:00:00Z"
    assert result["count"] == 3


@pytest.fixture
def restore_logging():
    yield
    structlog.reset_defaults()
    logging.basicConfig(level=logging.WARNING, force=True)


def test_configure_logging(capsys, restore_logging):
    configure_logging(GovernanceSettings(_env_file=None, log_level="debug", log_json=True))
    structlog.get_logger("phr_governance.test").info("Contact reached", email="a@b.co")

    out = capsys.readouterr().out
    assert "Contact reached" in out
    assert "a@b.co" not in out
    assert logging.getLogger().level == logging.DEBUG
