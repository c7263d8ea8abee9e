from fastapi import Request

from app.service import ProvenanceService


def get_service(request: Request) -> ProvenanceService:
    return request.app.state.service
