"""Dependências reutilizáveis das rotas de WhatsApp."""

from __future__ import annotations

from functools import lru_cache

from fastapi import Header, HTTPException

from app.core.config import settings
from app.core.security import jwt_claims, parse_bearer
from app.repositories.inbox import InboxRepository, SupabaseError
from app.services.edge_functions import EdgeFunctionsClient

from .cooldown import SendCooldown
from .service import ComposeState


class ComposeSlots:
    """Campos de composição em uso, por (usuário, conversa).

    Um slot só existe enquanto há um envio em andamento; é o que impede um
    segundo envio do mesmo usuário na mesma conversa antes do primeiro voltar.
    """

    def __init__(self) -> None:
        self._slots: dict[tuple[str, str], ComposeState] = {}

    def open(self, key: tuple[str, str]) -> ComposeState | None:
        current = self._slots.get(key)
        if current is not None and current.is_sending:
            return None
        slot = ComposeState()
        self._slots[key] = slot
        return slot

    def release(self, key: tuple[str, str], slot: ComposeState) -> None:
        if self._slots.get(key) is slot:
            del self._slots[key]

    def __len__(self) -> int:
        return len(self._slots)


async def require_token(authorization: str | None = Header(default=None)) -> str:
    token = parse_bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="auth_required")
    return token


def user_key(token: str) -> str:
    """Identificador estável do usuário para chaves em memória."""
    return str(jwt_claims(token).get("sub") or token[-16:])


def get_repository() -> InboxRepository:
    try:
        return InboxRepository()
    except SupabaseError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def get_functions() -> EdgeFunctionsClient:
    return EdgeFunctionsClient()


@lru_cache(maxsize=1)
def get_cooldown() -> SendCooldown:
    """Registro de intervalo compartilhado pelo processo."""
    return SendCooldown(settings.send_cooldown_ms)


@lru_cache(maxsize=1)
def get_compose_slots() -> ComposeSlots:
    return ComposeSlots()
