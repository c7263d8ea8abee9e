import json
import logging

from utils.logging_config import AuditLogger, StructuredFormatter, get_request_id, set_request_id


def test_structured_formatter_carries_request_id_and_extras():
    set_request_id("req-42")
    record = logging.LogRecord("app.policy", logging.INFO, __file__, 10, "routed %s", ("B1",), None)
    record.extra_fields = {"event_type": "VALIDATION_DECISION", "batch_id": "B1"}

    line = json.loads(StructuredFormatter().format(record))

    assert line["message"] == "routed B1"
    assert line["request_id"] == "req-42"
    assert line["event_type"] == "VALIDATION_DECISION"
    assert line["level"] == "INFO"


def test_set_request_id_generates_one_when_missing():
    generated = set_request_id()
    assert generated
    assert get_request_id() == generated


def test_audit_events_are_typed(caplog):
    audit = AuditLogger("provenance.audit.test")
    with caplog.at_level(logging.INFO, logger="provenance.audit.test"):
        audit.certificate_issued("B1", "CERT-B1-1", "TX-9")
        audit.certificate_pending("B2", "CERT-B2-1", "bridge down")

    issued, pending = caplog.records
    assert issued.extra_fields["event_type"] == "CERTIFICATE_ISSUED"
    assert issued.extra_fields["transaction_id"] == "TX-9"
    assert pending.levelno == logging.ERROR
    assert pending.getMessage().startswith("CERTIFICATE_PENDING")
