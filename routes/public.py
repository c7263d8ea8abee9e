# backend/routes/public.py

from fastapi import APIRouter, Depends

from app.deps import get_service
from app.models.public import PublicCertificateDetails

router = APIRouter()


@router.get("/api/public/verify/{certificate_id}", response_model=PublicCertificateDetails, tags=["public"])
async def public_certificate_verify(certificate_id: str, service=Depends(get_service)):
    """
    Public, unauthenticated endpoint behind the certificate QR code.
    Returns the stage snapshot and whether the certificate hash still matches
    the ledger transactions it was minted over.
    """
    return await service.verify_certificate(certificate_id)
