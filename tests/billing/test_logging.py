"""Tests for PII redaction and JSON log formatting."""

import json
import logging

from backend.core.logging import PIIRedactionFilter, mask_iban, redact_pii
from backend.core.observability import set_trace_id
from backend.core.observability.logging import JSONFormatter, set_run_id


def _record(msg, args=None, **extra):
    record = logging.LogRecord("agents.billing.test", logging.INFO, __file__, 1, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_mask_iban():
    """Test first four and last four characters survive."""
    assert mask_iban("DE89370400440532013000") == "DE89**************3000"


def test_redact_pii_in_free_text():
    """Test IBAN, email and phone are masked in one message."""
    text = "debtor DE89370400440532013000 mail max.mustermann@example.com tel +49 170 1234567"

    redacted = redact_pii(text)

    assert "DE89370400440532013000" not in redacted
    assert "DE89**************3000" in redacted
    assert "m*************@example.com" in redacted
    assert "1234567" not in redacted


def test_redact_pii_passes_non_strings():
    """Test numbers and None are returned unchanged."""
    assert redact_pii(42) == 42
    assert redact_pii(None) is None


def test_filter_redacts_message_args():
    """Test the filter masks positional arguments."""
    record = _record("charging %s", ("DE89370400440532013000",))

    PIIRedactionFilter().filter(record)

    assert record.getMessage() == "charging DE89**************3000"


def test_json_formatter_fields_and_extras():
    """Test mandatory fields and redaction of structured extras."""
    set_trace_id("trace-123")
    set_run_id("dispatch-1")
    try:
        line = JSONFormatter().format(_record("payee_verification_scored", iban="DE89370400440532013000", score=100))
    finally:
        set_run_id(None)

    entry = json.loads(line)

    assert entry["trace_id"] == "trace-123"
    assert entry["run_id"] == "dispatch-1"
    assert entry["level"] == "info"
    assert entry["logger"] == "agents.billing.test"
    assert entry["msg"] == "payee_verification_scored"
    assert entry["iban"] == "DE89**************3000"
    assert entry["score"] == 100
    assert entry["ts_utc"].endswith("Z")
