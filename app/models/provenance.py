from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.config import REQUIRED_IMAGES_PER_STAGE, TOTAL_STAGES

# Fixed, ordered stage table. Exactly seven stages exist.
STAGE_NAMES: Dict[int, str] = {
    1: "Land Preparation",
    2: "Sowing",
    3: "Irrigation",
    4: "Fertilization",
    5: "Pest Control",
    6: "Harvesting",
    7: "Packaging",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def empty_stage_counts() -> Dict[int, int]:
    return {stage: 0 for stage in range(1, TOTAL_STAGES + 1)}


class ValidationAction(str, Enum):
    AUTO_APPROVE = "AUTO_APPROVE"
    AUTO_REJECT = "AUTO_REJECT"
    FLAG_FOR_HUMAN = "FLAG_FOR_HUMAN"


class ReviewStatus(str, Enum):
    NOT_REQUIRED = "NOT_REQUIRED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class VerifiedMethod(str, Enum):
    AUTO_APPROVE = "AUTO_APPROVE"
    EXPERT_APPROVED = "EXPERT_APPROVED"


class BatchState(str, Enum):
    COLLECTING = "COLLECTING"
    ELIGIBLE = "ELIGIBLE"
    CERTIFIED = "CERTIFIED"


# =====================================================
# INPUT
# =====================================================

class ImageSubmission(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_id: str
    stage_number: int = Field(ge=1, le=TOTAL_STAGES)
    content: bytes = Field(repr=False)
    mime_type: Optional[str] = None
    arrived_at: datetime = Field(default_factory=utcnow)


# =====================================================
# VALIDATION
# =====================================================

class ImageCheckResult(BaseModel):
    format_valid: bool
    integrity_valid: bool
    format_issues: List[str] = []
    integrity_issues: List[str] = []

    @property
    def issues(self) -> List[str]:
        return self.format_issues + self.integrity_issues


class OracleScore(BaseModel):
    fake_probability: float = Field(ge=0.0, le=1.0)
    model_used: str
    fallback: bool = False  # True when the neutral fail-safe score was substituted


class ValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    format_valid: bool
    integrity_valid: bool
    content_hash: str
    authenticity_score: float = Field(ge=0.0, le=1.0)
    visual_quality_score: int = Field(ge=0, le=100)
    action: ValidationAction
    reason: str
    requires_human_review: bool
    issues: List[str] = []
    model_used: Optional[str] = None
    file_size: int = 0
    image_ref: Optional[str] = None


class ValidationRecord(BaseModel):
    """Persisted outcome of one submission, doubling as the review queue entry."""

    image_ref: str
    batch_id: str
    stage_number: int
    result: ValidationResult
    oracle_fallback: bool = False
    review_status: ReviewStatus = ReviewStatus.NOT_REQUIRED
    reviewer_id: Optional[str] = None
    review_reason: Optional[str] = None
    # farmer dispute of an AUTO_REJECT, which reopens the record for review
    appeal_reason: Optional[str] = None
    appealed_by: Optional[str] = None
    appealed_at: Optional[datetime] = None
    verified_method: Optional[VerifiedMethod] = None
    transaction_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    reviewed_at: Optional[datetime] = None


# =====================================================
# LEDGER + CERTIFICATE
# =====================================================

class LedgerRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_id: str
    stage_number: int
    content_hash: str
    transaction_id: str
    recorded_at: datetime = Field(default_factory=utcnow)


class LedgerReceipt(BaseModel):
    transaction_id: str
    duplicate: bool = False


class Certificate(BaseModel):
    model_config = ConfigDict(frozen=True)

    certificate_id: str
    batch_id: str
    certificate_hash: str
    stages_snapshot: Dict[int, int]
    transaction_ids: List[str]
    issued_at: datetime
    qr_target_url: str


class CertificateIssuedEvent(BaseModel):
    batch_id: str
    certificate_id: str
    qr_target_url: str


# =====================================================
# BATCH AGGREGATE
# =====================================================

class EvidenceEntry(BaseModel):
    content_hash: str
    stage_number: int
    transaction_id: str


class BatchProvenance(BaseModel):
    batch_id: str
    farmer_id: Optional[str] = None
    crop_type: Optional[str] = None
    quantity: Optional[float] = None
    stage_counts: Dict[int, int] = Field(default_factory=empty_stage_counts)
    evidence: List[EvidenceEntry] = []
    certificate_issued: bool = False
    certificate_id: Optional[str] = None
    certificate: Optional[Certificate] = None
    certificate_transaction_id: Optional[str] = None
    # minted but not yet acknowledged by the ledger
    pending_certificate: Optional[Certificate] = None
    created_at: datetime = Field(default_factory=utcnow)

    def has_evidence(self, content_hash: str) -> bool:
        return any(e.content_hash == content_hash for e in self.evidence)

    @property
    def transaction_ids(self) -> List[str]:
        return [e.transaction_id for e in self.evidence]

    def missing_stages(self, required: int = REQUIRED_IMAGES_PER_STAGE) -> Dict[int, int]:
        """Stage number -> images still needed to reach the floor."""
        return {
            stage: required - self.stage_counts.get(stage, 0)
            for stage in STAGE_NAMES
            if self.stage_counts.get(stage, 0) < required
        }

    def is_eligible(self, required: int = REQUIRED_IMAGES_PER_STAGE) -> bool:
        return not self.missing_stages(required)

    def state(self, required: int = REQUIRED_IMAGES_PER_STAGE) -> BatchState:
        if self.certificate_issued:
            return BatchState.CERTIFIED
        if self.is_eligible(required):
            return BatchState.ELIGIBLE
        return BatchState.COLLECTING
