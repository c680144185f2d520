# =============================================================================
# FastAPI Application Entry Point
# =============================================================================
#
# Run locally:
#   uvicorn esop_analyzer.main:app --reload
#   celery -A esop_analyzer.workers.celery_app worker --loglevel=info
#   celery -A esop_analyzer.workers.celery_app beat --loglevel=info
#
# MIDDLEWARE ORDER: Starlette runs the last-added middleware first, so
# requests pass CORS → security headers → audit logging → router.
# =============================================================================

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from esop_analyzer.api import documents, metrics, questions
from esop_analyzer.api.audit import AuditLoggingMiddleware, SecurityHeadersMiddleware
from esop_analyzer.config import settings
from esop_analyzer.db.engine import async_engine, init_models
from esop_analyzer.models.responses import HealthResponse

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format=LOG_FORMAT,
    )
    # httpx logs every embedding/LLM request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    await init_models()
    yield
    await async_engine.dispose()
    logger.info("Shut down %s", settings.app_name)


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description=(
        "Upload ESOP valuation reports, extract valuation metrics and ask "
        "questions answered from the document with page citations."
    ),
    lifespan=lifespan,
)

app.add_middleware(AuditLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(documents.router, prefix="/api")
app.include_router(questions.router, prefix="/api")
app.include_router(metrics.router, prefix="/api")


@app.get("/api/health", response_model=HealthResponse, tags=["Health"])
async def health() -> HealthResponse:
    return HealthResponse(
        version=settings.app_version,
        service=settings.app_name,
        timestamp=datetime.now(timezone.utc),
    )
