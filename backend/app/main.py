"""Ponto de entrada da API do inbox do CRM."""

import logging
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes.health import router as health_router
from app.channels.whatsapp.router import router as whatsapp_router
from app.core.config import settings
from app.core.logging import configure_logging, get_logger, resolve_log_level
from app.core.middleware import RequestLoggingMiddleware
from app.core.security import mask_secret


def create_app() -> FastAPI:
    """Cria e configura a instância do FastAPI."""
    default_log_level = logging.DEBUG if settings.environment != "production" else logging.INFO
    log_level = resolve_log_level(settings.log_level, default=default_log_level)
    log_dir = Path(settings.log_file_path).parent
    per_logger_files = {
        "app.request": str(log_dir / "request.log"),
        "app.channels.whatsapp": str(log_dir / "whatsapp.log"),
        "app.services.realtime": str(log_dir / "realtime.log"),
    }

    configure_logging(
        level=log_level,
        log_file=settings.log_file_path,
        per_logger_files=per_logger_files,
    )
    get_logger("app").info(
        "app.configured",
        extra={
            "environment": settings.environment,
            "supabase_url": settings.supabase_url,
            "supabase_anon": mask_secret(settings.supabase_anon),
            "send_cooldown_ms": settings.send_cooldown_ms,
        },
    )

    app = FastAPI(title="CRM Inbox API", version="0.1.0", root_path="/api")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Ajustado por ambiente no proxy
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health_router)
    app.include_router(whatsapp_router)

    return app


app = create_app()
