"""
Test structured logging helpers.
"""
import json
import logging

from billing_engine.core.logging import (
    LOGGER_NAME,
    CorrelationIdFilter,
    JsonFormatter,
    correlation_scope,
    get_correlation_id,
    log_event,
)


def test_correlation_scope_binds_and_resets():
    assert get_correlation_id() is None

    with correlation_scope("renewal-1") as cid:
        assert cid == "renewal-1"
        assert get_correlation_id() == "renewal-1"

    assert get_correlation_id() is None
    with correlation_scope() as generated:
        assert len(generated) == 32


def test_log_event_redacts_secrets_and_truncates(caplog):
    with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
        log_event(
            "warning",
            "[billing] test event",
            billing_id="bill_1",
            processor="paypal",
            extra={"client_secret": "shh", "note": "x" * 600},
        )

    [record] = [r for r in caplog.records if r.getMessage() == "[billing] test event"]
    assert record.levelno == logging.WARNING
    assert record.billing_id == "bill_1"
    assert record.client_secret == "<redacted>"
    assert record.note.endswith("...<truncated>")
    assert len(record.note) == 500 + len("...<truncated>")


def test_json_formatter_includes_billing_fields():
    record = logging.LogRecord(LOGGER_NAME, logging.ERROR, __file__, 1, "state diverged", None, None)
    record.billing_id = "bill_1"
    record.processor = "stripe"

    with correlation_scope("evt_1"):
        CorrelationIdFilter().filter(record)

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "ERROR"
    assert payload["message"] == "state diverged"
    assert payload["correlation_id"] == "evt_1"
    assert payload["billing_id"] == "bill_1"
    assert payload["processor"] == "stripe"
    assert "user_id" not in payload
