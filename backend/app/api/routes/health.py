"""Endpoint de saúde mínimo para verificações rápidas."""
from fastapi import APIRouter

from app.core.config import settings

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", summary="Estado do serviço")
def healthcheck() -> dict[str, str | bool]:
    """Retorna um payload estático indicando que a API está no ar."""
    return {"status": "ok", "supabase_configured": bool(settings.supabase_url)}
