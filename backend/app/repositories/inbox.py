"""Repositório das tabelas do inbox de WhatsApp via Supabase REST."""

from __future__ import annotations

from typing import Any

import httpx

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

CONVERSATION_COLUMNS = (
    "id,organization_id,instance_id,phone_number,chat_id,is_group,contact_name,"
    "contact_profile_pic,last_message_at,unread_count,lead_id"
)
MESSAGE_COLUMNS = (
    "id,conversation_id,instance_id,direction,message_type,content,media_url,"
    "media_caption,created_at,status,is_from_bot,provider_message_id"
)


class SupabaseError(RuntimeError):
    """Erros derivados de chamadas ao Supabase."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SupabaseNetworkError(SupabaseError):
    """Falha de transporte (DNS, conexão, timeout) ao falar com o Supabase."""


def supabase_headers(
    token: str | None,
    *,
    prefer: str | None = None,
    content_type: str | None = None,
) -> dict[str, str]:
    """Monta os headers de autenticação.

    Com token do usuário, o RLS do Supabase se aplica (apikey = anon key);
    sem token, usa a service role.
    """
    headers: dict[str, str] = {"Accept": "application/json"}
    if prefer:
        headers["Prefer"] = prefer
    if content_type:
        headers["Content-Type"] = content_type

    if token:
        headers["Authorization"] = f"Bearer {token}"
        if settings.supabase_anon:
            headers["apikey"] = settings.supabase_anon
    elif settings.supabase_service_role:
        headers["Authorization"] = f"Bearer {settings.supabase_service_role}"
        headers["apikey"] = settings.supabase_service_role
    else:
        raise SupabaseError("Falta SUPABASE_SERVICE_ROLE para realizar a operação")
    return headers


def supabase_base_url() -> str:
    if not settings.supabase_url:
        raise SupabaseError("Supabase URL não configurada")
    return settings.supabase_url.rstrip("/")


class InboxRepository:
    """Camada fina de acesso às tabelas `whatsapp_*`."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._base_url = supabase_base_url()
        self._transport = transport

    async def list_instances(self, *, token: str, user_id: str) -> list[dict[str, Any]]:
        """Instâncias conectadas que o usuário tem permissão de visualizar."""
        params = {
            "select": "instance_id,can_view,whatsapp_instances!inner(id,name,phone_number,is_connected)",
            "user_id": f"eq.{user_id}",
            "can_view": "eq.true",
        }
        response = await self._request(
            "GET", "/rest/v1/whatsapp_instance_users", token=token, params=params
        )
        instances: list[dict[str, Any]] = []
        for row in self._json_list(response):
            instance = row.get("whatsapp_instances")
            if isinstance(instance, list):
                instance = instance[0] if instance else None
            if isinstance(instance, dict) and instance.get("is_connected"):
                instances.append(instance)
        return instances

    async def list_conversations(
        self,
        *,
        token: str | None,
        organization_id: str | None = None,
        instance_id: str | None = None,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        params = {
            "select": CONVERSATION_COLUMNS,
            "order": "last_message_at.desc.nullslast",
            "limit": str(limit),
        }
        # Sem organização explícita, o RLS já restringe à organização do usuário
        if organization_id:
            params["organization_id"] = f"eq.{organization_id}"
        if instance_id:
            params["instance_id"] = f"eq.{instance_id}"
        if unread_only:
            params["unread_count"] = "gt.0"
        response = await self._request(
            "GET", "/rest/v1/whatsapp_conversations", token=token, params=params
        )
        return self._json_list(response)

    async def fetch_conversation(
        self, *, token: str | None, conversation_id: str
    ) -> dict[str, Any] | None:
        params = {
            "select": CONVERSATION_COLUMNS,
            "id": f"eq.{conversation_id}",
            "limit": "1",
        }
        response = await self._request(
            "GET", "/rest/v1/whatsapp_conversations", token=token, params=params
        )
        rows = self._json_list(response)
        return rows[0] if rows else None

    async def list_messages(
        self, *, token: str | None, conversation_id: str, limit: int = 100
    ) -> list[dict[str, Any]]:
        # Últimas `limit` mensagens, devolvidas em ordem cronológica
        params = {
            "select": MESSAGE_COLUMNS,
            "conversation_id": f"eq.{conversation_id}",
            "order": "created_at.desc",
            "limit": str(limit),
        }
        response = await self._request(
            "GET", "/rest/v1/whatsapp_messages", token=token, params=params
        )
        return list(reversed(self._json_list(response)))

    async def mark_read(self, *, token: str | None, conversation_id: str) -> None:
        await self._request(
            "PATCH",
            "/rest/v1/whatsapp_conversations",
            token=token,
            params={"id": f"eq.{conversation_id}"},
            json={"unread_count": 0},
        )

    async def link_lead(
        self, *, token: str | None, conversation_id: str, lead_id: str | None
    ) -> dict[str, Any]:
        response = await self._request(
            "PATCH",
            "/rest/v1/whatsapp_conversations",
            token=token,
            params={"id": f"eq.{conversation_id}", "select": CONVERSATION_COLUMNS},
            json={"lead_id": lead_id},
            prefer="return=representation",
        )
        rows = self._json_list(response)
        if not rows:
            raise SupabaseError("Conversa não encontrada ou sem permissão", status_code=404)
        return rows[0]

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: str | None,
        params: dict[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        url = f"{self._base_url}{path}"
        headers = supabase_headers(
            token, prefer=prefer, content_type="application/json" if json is not None else None
        )
        try:
            async with httpx.AsyncClient(
                timeout=settings.http_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.request(
                    method, url, params=params, json=json, headers=headers
                )
        except httpx.RequestError as exc:
            logger.exception("supabase.request_failed", extra={"path": path, "error": str(exc)})
            raise SupabaseNetworkError(f"Erro ao conectar ao Supabase: {exc}") from exc
        if response.status_code >= 400:
            logger.error(
                "supabase.response_error",
                extra={"path": path, "status": response.status_code, "body": response.text},
            )
            raise SupabaseError(
                f"Supabase respondeu {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json_list(response: httpx.Response) -> list[dict[str, Any]]:
        if not response.content:
            return []
        payload = response.json() or []
        if not isinstance(payload, list):
            raise SupabaseError("Resposta inesperada do Supabase")
        return [row for row in payload if isinstance(row, dict)]
