"""
Logging configuration.

Structured JSON logs with a per-request id, plus an audit logger for the
decisions that matter after the fact: validation routing, human reviews,
ledger writes and certificate issuance.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import List, Optional

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, suitable for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    def __init__(self, name: str = "provenance.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
            **kwargs,
        }
        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None,
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def validation_decision(
        self,
        batch_id: str,
        stage_number: int,
        content_hash: str,
        action: str,
        authenticity_score: float,
        visual_quality_score: int,
    ) -> None:
        level = logging.WARNING if action == "AUTO_REJECT" else logging.INFO
        self._log(
            level,
            "VALIDATION_DECISION",
            batch_id=batch_id,
            stage_number=stage_number,
            content_hash=content_hash,
            action=action,
            authenticity_score=authenticity_score,
            visual_quality_score=visual_quality_score,
            message=f"{action} for batch {batch_id} stage {stage_number}",
        )

    def human_decision(self, image_ref: str, batch_id: str, reviewer_id: str, approved: bool) -> None:
        self._log(
            logging.INFO,
            "HUMAN_DECISION",
            image_ref=image_ref,
            batch_id=batch_id,
            reviewer_id=reviewer_id,
            approved=approved,
            message=f"{'Approved' if approved else 'Rejected'} {image_ref} by {reviewer_id}",
        )

    def appeal_filed(self, image_ref: str, batch_id: str, farmer_id: str, reason: str) -> None:
        self._log(
            logging.INFO,
            "APPEAL_FILED",
            image_ref=image_ref,
            batch_id=batch_id,
            farmer_id=farmer_id,
            reason=reason,
            message=f"Appeal on {image_ref} by {farmer_id}",
        )

    def ledger_record(self, batch_id: str, content_hash: str, transaction_id: str, duplicate: bool) -> None:
        self._log(
            logging.INFO,
            "LEDGER_RECORD",
            batch_id=batch_id,
            content_hash=content_hash,
            transaction_id=transaction_id,
            duplicate=duplicate,
            message=f"Image {content_hash[:12]} recorded as {transaction_id}",
        )

    def certificate_issued(self, batch_id: str, certificate_id: str, transaction_id: str) -> None:
        self._log(
            logging.INFO,
            "CERTIFICATE_ISSUED",
            batch_id=batch_id,
            certificate_id=certificate_id,
            transaction_id=transaction_id,
            message=f"Certificate {certificate_id} issued for batch {batch_id}",
        )

    def certificate_pending(self, batch_id: str, certificate_id: str, error: str) -> None:
        self._log(
            logging.ERROR,
            "CERTIFICATE_PENDING",
            batch_id=batch_id,
            certificate_id=certificate_id,
            error=error,
            message=f"Certificate {certificate_id} awaiting ledger publish",
        )

    def oracle_fallback(self, failures: List[str], fail_safe: bool) -> None:
        self._log(
            logging.WARNING,
            "ORACLE_FALLBACK",
            failures=failures,
            fail_safe=fail_safe,
            message="All authenticity models failed",
        )


def configure_logging(level: str = "INFO", json_format: bool = True, log_file: Optional[str] = None) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    return request_id_var.get()


audit_log = AuditLogger()
