# app/routes/batches.py
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.deps import get_service
from app.models.public import BatchStatus, PublishOutcome

router = APIRouter(prefix="/api", tags=["batches"])


class BatchCreate(BaseModel):
    batchId: str
    farmerId: str
    cropType: str
    quantity: float = Field(ge=0)


@router.post("/batches", response_model=BatchStatus)
async def register_batch_endpoint(batch: BatchCreate, service=Depends(get_service)):
    return await service.register_batch(batch.batchId, batch.farmerId, batch.cropType, batch.quantity)


@router.get("/batches/{batch_id}/status", response_model=BatchStatus)
async def batch_status_endpoint(batch_id: str, service=Depends(get_service)):
    return await service.batch_status(batch_id)


@router.post("/batches/{batch_id}/certificate/publish", response_model=PublishOutcome)
async def publish_certificate_endpoint(batch_id: str, service=Depends(get_service)):
    """Re-send a minted certificate the ledger has not acknowledged yet."""
    return await service.publish_pending_certificate(batch_id)
