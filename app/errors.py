"""
Error taxonomy for the provenance core.

Validation outcomes (approve / reject / flag) are data, never exceptions.
Only input errors, dependency failures and review-state conflicts raise.
"""


class ProvenanceError(Exception):
    code = "PROVENANCE_ERROR"
    status_code = 500
    retryable = False
    public_message = "Request could not be processed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.public_message_for_user(), "retryable": self.retryable}

    def public_message_for_user(self) -> str:
        return self.message


# ---------- input errors (never retried, never recorded) ----------

class InvalidStageError(ProvenanceError):
    code = "INVALID_STAGE"
    status_code = 422
    public_message = "Stage number must be between 1 and 7"


class EmptyPayloadError(ProvenanceError):
    code = "EMPTY_PAYLOAD"
    status_code = 422
    public_message = "Image payload is empty"


# ---------- dependency failures (retryable by the caller) ----------

class DependencyError(ProvenanceError):
    status_code = 503
    retryable = True

    def public_message_for_user(self) -> str:
        # raw dependency errors stay in the logs
        return self.public_message


class OracleUnavailableError(DependencyError):
    code = "ORACLE_UNAVAILABLE"
    public_message = "Image authenticity service is temporarily unavailable, please retry"


class LedgerUnavailableError(DependencyError):
    code = "LEDGER_UNAVAILABLE"
    public_message = "Verification ledger is temporarily unavailable, please retry"


# ---------- lookups and review state ----------

class BatchNotFoundError(ProvenanceError):
    code = "BATCH_NOT_FOUND"
    status_code = 404
    public_message = "Batch not found"


class CertificateNotFoundError(ProvenanceError):
    code = "CERTIFICATE_NOT_FOUND"
    status_code = 404
    public_message = "Certificate not found"


class ReviewNotFoundError(ProvenanceError):
    code = "REVIEW_NOT_FOUND"
    status_code = 404
    public_message = "Image reference not found"


class ReviewConflictError(ProvenanceError):
    code = "REVIEW_CONFLICT"
    status_code = 409
    public_message = "Review cannot be applied to this image"
