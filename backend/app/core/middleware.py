"""Middlewares da API do inbox."""

from __future__ import annotations

import time
from uuid import uuid4

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger("app.request")


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Registra início, fim e falhas de cada request, com um request_id."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid4().hex
        path = request.url.path
        quiet = path.startswith(settings.request_log_skip_prefixes)
        start = time.perf_counter()
        context = {
            "request_id": request_id,
            "method": request.method,
            "path": path,
            "client_ip": _client_ip(request),
        }

        if not quiet:
            logger.info("request.started", extra=context)

        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request.failed",
                extra={**context, "duration_ms": round((time.perf_counter() - start) * 1000, 2)},
            )
            raise

        response.headers["x-request-id"] = request_id
        if not quiet:
            logger.info(
                "request.completed",
                extra={
                    **context,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
        return response
