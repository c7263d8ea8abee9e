from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from app.models.provenance import BatchState, Certificate, ReviewStatus, ValidationResult


class StageProgress(BaseModel):
    stage_number: int
    stage_name: str
    verified_images: int
    required: int
    complete: bool


class BatchStatus(BaseModel):
    batch_id: str
    farmer_id: Optional[str] = None
    crop_type: Optional[str] = None
    quantity: Optional[float] = None
    state: BatchState
    stages: List[StageProgress]
    missing_stages: Dict[int, int] = Field(description="Stage number -> images still needed.")
    certificate_id: Optional[str] = None
    certificate_pending: bool = False


class PendingReview(BaseModel):
    image_ref: str
    batch_id: str
    stage_number: int
    stage_name: str
    result: ValidationResult
    oracle_fallback: bool
    appeal_reason: Optional[str] = None
    created_at: datetime


class HumanDecisionOutcome(BaseModel):
    image_ref: str
    batch_id: str
    stage_number: int
    review_status: ReviewStatus
    reviewer_id: str
    transaction_id: Optional[str] = None
    batch_state: Optional[BatchState] = None
    certificate_id: Optional[str] = None


class AppealOutcome(BaseModel):
    image_ref: str
    batch_id: str
    stage_number: int
    review_status: ReviewStatus
    appeal_reason: str
    appealed_by: str
    appealed_at: datetime


class VerifiedCounts(BaseModel):
    total: int = 0
    auto_approved: int = 0
    expert_approved: int = 0


class ValidationStats(BaseModel):
    total_validations: int = 0
    auto_approved: int = 0
    auto_rejected: int = 0
    flagged_for_human: int = 0
    pending_reviews: int = 0
    appeals: int = 0
    oracle_fallbacks: int = 0
    average_fake_score: Optional[float] = Field(
        default=None, description="Mean authenticity score over real oracle answers only."
    )
    verified: VerifiedCounts = Field(default_factory=VerifiedCounts)


class PublishOutcome(BaseModel):
    batch_id: str
    state: BatchState
    certificate: Optional[Certificate] = None
    published_now: bool = False
    certificate_pending: bool = False


class StageSnapshot(BaseModel):
    stage_number: int
    stage_name: str
    verified_images: int


class PublicCertificateDetails(BaseModel):
    certificateId: str
    batchId: str
    cropType: Optional[str] = None
    farmerId: Optional[str] = None
    quantity: Optional[float] = None
    issuedAt: datetime
    certificateHash: str
    hashValid: bool = Field(description="Recomputed digest over the batch's ledger transactions matches.")
    ledgerTransactionId: Optional[str] = None
    blockchainTransactions: List[str]
    stages: List[StageSnapshot]
    qrTargetUrl: str
