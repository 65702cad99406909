"""Tests for structured logging helpers."""

import json
import logging

from readerpass.core.logging import JsonFormatter, log_event, request_id_ctx_var


def test_log_event_binds_request_id_and_truncates_session(caplog):
    token = request_id_ctx_var.set("rid-42")
    try:
        with caplog.at_level(logging.INFO, logger="readerpass"):
            log_event(
                "info",
                "entitlements.granted",
                session_id="sess_abcdefghijklmnopqrstuvwxyz0123456789",
                provider="domestic",
                reference="rp-daypass-1",
                event_type="entitlements.grant",
            )
    finally:
        request_id_ctx_var.reset(token)

    record = next(r for r in caplog.records if r.getMessage() == "entitlements.granted")
    assert record.request_id == "rid-42"
    assert record.session_id == "sess_abc..."
    assert record.provider == "domestic"


def test_json_formatter_emits_structured_fields():
    record = logging.LogRecord("readerpass", logging.WARNING, __file__, 1, "payments.rejected", None, None)
    record.request_id = "rid-1"
    record.error_code = "payment_failed"
    record.reference = "rp-member-1"

    payload = json.loads(JsonFormatter().format(record))
    assert payload["message"] == "payments.rejected"
    assert payload["level"] == "WARNING"
    assert payload["error_code"] == "payment_failed"
    assert payload["reference"] == "rp-member-1"
