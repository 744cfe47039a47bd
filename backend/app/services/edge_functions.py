"""Chamadas às Edge Functions do WhatsApp e upload direto para o Storage.

As funções não são consistentes no formato de erro (`{error}` no topo,
`{success: false, error}` ou erro HTTP), então toda resposta é normalizada
aqui em um único `RemoteResult`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from app.core.config import settings
from app.core.logging import get_logger
from app.repositories.inbox import SupabaseNetworkError, supabase_base_url, supabase_headers

logger = get_logger(__name__)

CREATE_UPLOAD_URL_FUNCTION = "whatsapp-create-upload-url"
SEND_MESSAGE_FUNCTION = "whatsapp-send-message"

ResultKind = Literal["ok", "rejected", "network"]


@dataclass(slots=True, frozen=True)
class RemoteResult:
    """Resultado discriminado de uma chamada remota."""

    kind: ResultKind
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    status_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.kind == "ok"

    @classmethod
    def network(cls, error: str) -> RemoteResult:
        return cls(kind="network", error=error)

    @classmethod
    def from_response(cls, status_code: int, payload: Any) -> RemoteResult:
        if not isinstance(payload, dict):
            if status_code >= 400:
                return cls(kind="rejected", error=_text_or_none(payload), status_code=status_code)
            return cls(kind="rejected", error="Resposta inesperada do servidor", status_code=status_code)

        error = _extract_error(payload)
        if error or payload.get("success") is False or status_code >= 400:
            return cls(kind="rejected", data=payload, error=error, status_code=status_code)
        return cls(kind="ok", data=payload, status_code=status_code)


def _text_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _extract_error(payload: dict[str, Any]) -> str | None:
    error = payload.get("error")
    if isinstance(error, dict):
        error = error.get("message") or error.get("error")
    return _text_or_none(error) or (
        _text_or_none(payload.get("message")) if payload.get("success") is False else None
    )


class EdgeFunctionsClient:
    """Invoca funções em `/functions/v1/<nome>` com o JWT do usuário."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    async def invoke(self, name: str, payload: dict[str, Any], *, token: str | None) -> RemoteResult:
        url = f"{supabase_base_url()}/functions/v1/{name}"
        headers = supabase_headers(token, content_type="application/json")
        try:
            async with httpx.AsyncClient(
                timeout=settings.http_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.RequestError as exc:
            logger.exception("edge_function.request_failed", extra={"function": name})
            return RemoteResult.network(str(exc) or exc.__class__.__name__)

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text

        result = RemoteResult.from_response(response.status_code, body)
        if not result.ok:
            logger.warning(
                "edge_function.rejected",
                extra={"function": name, "status": response.status_code, "error": result.error},
            )
        return result

    async def create_upload_url(
        self,
        *,
        token: str | None,
        organization_id: str,
        conversation_id: str,
        mime_type: str,
        kind: str,
    ) -> RemoteResult:
        result = await self.invoke(
            CREATE_UPLOAD_URL_FUNCTION,
            {
                "organizationId": organization_id,
                "conversationId": conversation_id,
                "mimeType": mime_type,
                "kind": kind,
            },
            token=token,
        )
        if result.ok and not (result.data.get("signedUrl") and result.data.get("path")):
            return RemoteResult(
                kind="rejected",
                data=result.data,
                error="Resposta sem signedUrl/path",
                status_code=result.status_code,
            )
        return result

    async def send_message(self, payload: dict[str, Any], *, token: str | None) -> RemoteResult:
        return await self.invoke(SEND_MESSAGE_FUNCTION, payload, token=token)

    async def upload_binary(self, signed_url: str, data: bytes, mime_type: str) -> int:
        """Faz o PUT do conteúdo bruto na URL assinada e retorna o status HTTP."""
        try:
            async with httpx.AsyncClient(
                timeout=settings.http_timeout_seconds, transport=self._transport
            ) as client:
                response = await client.put(
                    signed_url, content=data, headers={"Content-Type": mime_type}
                )
        except httpx.RequestError as exc:
            logger.exception("storage.upload_failed", extra={"bytes": len(data)})
            raise SupabaseNetworkError(f"Erro de rede no upload da mídia: {exc}") from exc
        if not response.is_success:
            logger.error(
                "storage.upload_rejected",
                extra={"status": response.status_code, "body": response.text[:500]},
            )
        return response.status_code
