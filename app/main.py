import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import LOG_JSON, LOG_LEVEL
from app.errors import DependencyError, ProvenanceError
from app.service import ProvenanceService, build_service
from utils.logging_config import configure_logging, set_request_id
# ROUTERS
from routes.batches import router as batch_router
from routes.images import router as image_router
from routes.public import router as public_router

logger = logging.getLogger(__name__)


def create_app(service: Optional[ProvenanceService] = None) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "service", None) is None:
            app.state.service = build_service()
        for store in (app.state.service.batches, app.state.service.validations):
            ensure_indexes = getattr(store, "ensure_indexes", None)
            if ensure_indexes is not None:
                await ensure_indexes()
        yield

    app = FastAPI(title="KrishiBarosa Provenance API", lifespan=lifespan)
    if service is not None:
        app.state.service = service

    # ================= CORS =================
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ================= REQUEST ID =================
    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = set_request_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # ================= ERRORS =================
    @app.exception_handler(ProvenanceError)
    async def provenance_error_handler(request: Request, exc: ProvenanceError):
        if isinstance(exc, DependencyError):
            logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
        else:
            logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # ================= ROUTERS =================
    app.include_router(image_router)
    app.include_router(batch_router)
    app.include_router(public_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


configure_logging(level=LOG_LEVEL, json_format=LOG_JSON)
app = create_app()
