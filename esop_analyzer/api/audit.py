# =============================================================================
# Audit Logging & Security Headers Middleware
# =============================================================================
#
# AuditLoggingMiddleware records every API request in audit_logs. Question
# requests also store the question and answer, which back
# GET /api/questions/history/{document_id}.
#
# DESIGN DECISION: Starlette middleware (not a FastAPI dependency) so the
# final status code and full request timing are captured for every route.
#
# DESIGN DECISION: Non-blocking writes. Audit failures are logged and never
# fail the request.
# =============================================================================

from __future__ import annotations

import logging
import time

from starlette.middleware.base import (
    BaseHTTPMiddleware,
    RequestResponseEndpoint,
)
from starlette.requests import Request
from starlette.responses import Response

from esop_analyzer.config import settings
from esop_analyzer.db.engine import async_session_factory
from esop_analyzer.db.models import AuditLog
from esop_analyzer.services.rate_limiter import client_ip as resolve_client_ip

logger = logging.getLogger(__name__)

_SKIP_PATHS = {"/api/health", "/docs", "/redoc", "/openapi.json"}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """
    Persist one AuditLog row per request.

    Handlers enrich the row through request.state: audit_document_id,
    audit_question and audit_answer (see api.deps.set_audit_context).
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        if not settings.audit_logging_enabled:
            return await call_next(request)

        if request.url.path in _SKIP_PATHS:
            return await call_next(request)

        start_time = time.monotonic()
        response = await call_next(request)
        elapsed_ms = int((time.monotonic() - start_time) * 1000)

        document_id = getattr(request.state, "audit_document_id", None)
        question = getattr(request.state, "audit_question", None)
        answer = getattr(request.state, "audit_answer", None)

        # "/api/questions/ask" → "questions"
        path_parts = request.url.path.strip("/").split("/")
        endpoint_name = path_parts[1] if len(path_parts) > 1 else path_parts[0]

        try:
            async with async_session_factory() as session:
                session.add(AuditLog(
                    endpoint=endpoint_name,
                    method=request.method,
                    path=str(request.url.path),
                    document_id=document_id,
                    question=question[:1000] if question else None,
                    answer=answer,
                    client_ip=resolve_client_ip(request)[:45],
                    status_code=response.status_code,
                    response_time_ms=elapsed_ms,
                ))
                await session.commit()
        except Exception as e:
            logger.warning("Failed to write audit log: %s", e)

        if response.status_code >= 400:
            logger.info(
                "%s %s → %d (%dms)",
                request.method, request.url.path, response.status_code, elapsed_ms,
            )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add the standard security response headers."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response
