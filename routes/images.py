from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from pydantic import BaseModel
from typing import List, Optional

from app.deps import get_service
from app.models.provenance import ValidationResult
from app.models.public import AppealOutcome, HumanDecisionOutcome, PendingReview, ValidationStats
from utils.jwt import require_reviewer, verify_token

router = APIRouter(prefix="/api", tags=["images"])


class ReviewDecision(BaseModel):
    batch_id: str
    stage: int
    approved: bool
    reason: Optional[str] = None


class AppealRequest(BaseModel):
    image_ref: str
    reason: Optional[str] = None


# =====================================================
# FARMER / COLLECTOR UPLOAD
# =====================================================

@router.post("/images", response_model=ValidationResult)
async def submit_image(
    batch_id: str = Form(...),
    stage: int = Form(...),
    photo: UploadFile = File(...),
    service=Depends(get_service),
):
    image_bytes = await photo.read()
    return await service.submit_image(batch_id, stage, image_bytes, photo.content_type)


@router.post("/appeals", response_model=AppealOutcome)
async def file_appeal(
    appeal: AppealRequest,
    user=Depends(verify_token),
    service=Depends(get_service),
):
    return await service.appeal(appeal.image_ref, farmer_id=user["id"], reason=appeal.reason)

# =====================================================
# EXPERT REVIEW QUEUE
# =====================================================

@router.get("/reviews/pending", response_model=List[PendingReview])
async def pending_reviews(
    limit: int = Query(50, ge=1, le=500),
    user=Depends(require_reviewer),
    service=Depends(get_service),
):
    return await service.list_pending_reviews(limit)


@router.post("/reviews/{image_ref}/decision", response_model=HumanDecisionOutcome)
async def review_decision(
    image_ref: str,
    decision: ReviewDecision,
    user=Depends(require_reviewer),
    service=Depends(get_service),
):
    return await service.record_human_decision(
        batch_id=decision.batch_id,
        stage_number=decision.stage,
        image_ref=image_ref,
        approved=decision.approved,
        reviewer_id=user["id"],
        reason=decision.reason,
    )

# =====================================================
# STATS
# =====================================================

@router.get("/ai/validation-stats", response_model=ValidationStats)
async def validation_stats(service=Depends(get_service)):
    return await service.validation_stats()
