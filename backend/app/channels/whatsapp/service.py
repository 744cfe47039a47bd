"""Orquestração do envio de mensagens (texto, imagem e áudio) pelo inbox.

Fluxo de um envio: checagem do intervalo mínimo → [pedido de URL de upload
→ PUT dos bytes] → chamada remota de envio → reconciliação da mensagem
otimista. Os passos são estritamente sequenciais e só o último persiste
uma mensagem, então qualquer falha anterior pode ser repetida sem deixar
linhas órfãs. Toda falha vira um `Notice` para o usuário; nada propaga.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import ValidationError

from app.core.logging import get_logger, log_event
from app.repositories.inbox import SupabaseNetworkError
from app.services.edge_functions import EdgeFunctionsClient, RemoteResult

from .cooldown import SendCooldown
from .media import PendingMedia
from .schemas import Conversation, Message
from .stores import ConversationStore, MessageStore

logger = get_logger("app.channels.whatsapp")

COOLDOWN_NOTICE = "Aguarde um pouco"
IN_FLIGHT_NOTICE = "Aguarde o envio anterior terminar"
UPLOAD_URL_FAILED = "Falha ao criar URL de upload"
SEND_FALLBACK = "Falha ao enviar mensagem"
NETWORK_FAILURE = "Falha de conexão ao enviar mensagem"
UNEXPECTED_FAILURE = "Erro inesperado ao enviar mensagem"

SendKind = Literal["text", "image", "audio"]


class SendError(Exception):
    """Base das falhas de envio exibidas ao usuário."""

    code = "unexpected"
    level: Literal["info", "error"] = "error"

    def notice(self) -> Notice:
        return Notice(code=self.code, level=self.level, message=str(self))


class CooldownActive(SendError):
    code = "cooldown"
    level = "info"

    def __init__(self, remaining_ms: float) -> None:
        super().__init__(COOLDOWN_NOTICE)
        self.remaining_ms = remaining_ms


class SendInFlight(SendError):
    code = "in_flight"
    level = "info"


class InvalidConversation(SendError):
    code = "invalid_conversation"


class UploadUrlError(SendError):
    code = "upload_url_failed"


class BinaryUploadError(SendError):
    code = "upload_failed"

    def __init__(self, status_code: int) -> None:
        super().__init__(f"Falha no upload da mídia (HTTP {status_code})")
        self.status_code = status_code


class RemoteSendRejected(SendError):
    code = "send_rejected"


class SendNetworkError(SendError):
    code = "network"


@dataclass(slots=True)
class Notice:
    """Aviso transitório exibido ao usuário."""

    code: str
    message: str
    level: Literal["info", "error"] = "error"


@dataclass(slots=True)
class ComposeState:
    """Campo de composição de uma conversa: texto, mídia pendente e trava de envio."""

    text: str = ""
    pending_media: PendingMedia | None = None
    is_sending: bool = False


@dataclass(slots=True)
class SendOutcome:
    status: Literal["sent", "skipped", "rejected"]
    message: Message | None = None
    provider_message_id: str | None = None
    notice: Notice | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "sent"


def _new_correlation_id() -> str:
    return uuid4().hex


class OutboundSendOrchestrator:
    """Executa um envio iniciado pelo usuário e produz exatamente uma mensagem."""

    def __init__(
        self,
        *,
        functions: EdgeFunctionsClient,
        cooldown: SendCooldown,
        token: str | None,
        organization_id: str,
        message_store: MessageStore | None = None,
        conversation_store: ConversationStore | None = None,
        correlation_id_factory: Callable[[], str] = _new_correlation_id,
    ) -> None:
        self._functions = functions
        self._cooldown = cooldown
        self._token = token
        self.organization_id = organization_id
        self.message_store = message_store
        self.conversation_store = conversation_store
        self._new_correlation_id = correlation_id_factory

    def cooldown_key(self, conversation: Conversation) -> tuple[str, str | None]:
        return (self.organization_id, conversation.instance_id)

    async def send_text(self, conversation: Conversation, compose: ComposeState) -> SendOutcome:
        return await self._run(conversation, compose, "text")

    async def send_image(self, conversation: Conversation, compose: ComposeState) -> SendOutcome:
        return await self._run(conversation, compose, "image")

    async def send_audio(self, conversation: Conversation, compose: ComposeState) -> SendOutcome:
        return await self._run(conversation, compose, "audio")

    async def handle_send(self, conversation: Conversation, compose: ComposeState) -> SendOutcome:
        """Envia o que estiver no campo: a mídia pendente, se houver, senão o texto."""
        kind: SendKind = compose.pending_media.kind if compose.pending_media else "text"
        return await self._run(conversation, compose, kind)

    async def _run(
        self, conversation: Conversation, compose: ComposeState, kind: SendKind
    ) -> SendOutcome:
        if compose.is_sending:
            return _rejected(SendInFlight(IN_FLIGHT_NOTICE))
        if kind == "text" and not compose.text.strip():
            return SendOutcome(status="skipped")
        if kind != "text" and (compose.pending_media is None or compose.pending_media.kind != kind):
            return SendOutcome(status="skipped")

        key = self.cooldown_key(conversation)
        remaining = self._cooldown.remaining_ms(key)
        if remaining > 0:
            log_event(
                logger,
                "whatsapp.send_cooldown",
                conversation_id=conversation.id,
                remaining_ms=round(remaining),
            )
            outcome = _rejected(CooldownActive(remaining))
            outcome.extra["retry_after_ms"] = round(remaining)
            return outcome

        if not conversation.instance_id:
            return _rejected(InvalidConversation("Conversa sem instância de WhatsApp vinculada"))

        correlation_id = self._new_correlation_id()
        caption = compose.text.strip() or None
        optimistic = Message(
            id=f"local-{correlation_id}",
            conversation_id=conversation.id,
            instance_id=conversation.instance_id,
            direction="outbound",
            message_type=kind,
            content=compose.text.strip() if kind == "text" else caption,
            media_caption=caption if kind != "text" else None,
            created_at=datetime.now(timezone.utc),
            status="sending",
            client_message_id=correlation_id,
        )
        if self.message_store is not None and self.message_store.conversation_id == conversation.id:
            self.message_store.add_optimistic(optimistic)

        compose.is_sending = True
        try:
            if kind == "text":
                result = await self._deliver_text(conversation, compose, correlation_id)
            else:
                result = await self._deliver_media(conversation, compose, kind, correlation_id)
        except SendError as exc:
            self._discard(correlation_id)
            logger.warning(
                "whatsapp.send_failed",
                extra={
                    "conversation_id": conversation.id,
                    "kind": kind,
                    "code": exc.code,
                    "error": str(exc),
                },
            )
            return _rejected(exc)
        except Exception:
            # Fronteira do envio: nenhuma falha derruba a tela, o usuário tenta de novo.
            self._discard(correlation_id)
            logger.exception(
                "whatsapp.send_unexpected_error",
                extra={"conversation_id": conversation.id, "kind": kind},
            )
            return _rejected(SendError(UNEXPECTED_FAILURE))
        finally:
            compose.is_sending = False

        self._cooldown.mark_sent(key)
        message, provider_message_id = self._reconcile(correlation_id, result)
        compose.text = ""
        if compose.pending_media is not None:
            compose.pending_media.preview_url = None
            compose.pending_media = None

        log_event(
            logger,
            "whatsapp.message_sent",
            conversation_id=conversation.id,
            kind=kind,
            provider_message_id=provider_message_id,
        )
        if self.message_store is not None:
            await self.message_store.invalidate()
        if self.conversation_store is not None:
            await self.conversation_store.invalidate()
        return SendOutcome(
            status="sent", message=message, provider_message_id=provider_message_id
        )

    def _base_payload(self, conversation: Conversation, correlation_id: str) -> dict[str, Any]:
        return {
            "organizationId": self.organization_id,
            "conversationId": conversation.id,
            "instanceId": conversation.instance_id,
            "chatId": conversation.chat_id,
            "phone": conversation.phone_number,
            "clientMessageId": correlation_id,
        }

    async def _deliver_text(
        self, conversation: Conversation, compose: ComposeState, correlation_id: str
    ) -> RemoteResult:
        payload = self._base_payload(conversation, correlation_id)
        payload.update({"content": compose.text.strip(), "messageType": "text"})
        return _checked(await self._functions.send_message(payload, token=self._token))

    async def _deliver_media(
        self,
        conversation: Conversation,
        compose: ComposeState,
        kind: SendKind,
        correlation_id: str,
    ) -> RemoteResult:
        media = compose.pending_media
        if media is None:
            raise SendError("Nenhuma mídia pendente para enviar")

        upload = await self._functions.create_upload_url(
            token=self._token,
            organization_id=self.organization_id,
            conversation_id=conversation.id,
            mime_type=media.mime_type,
            kind=kind,
        )
        if not upload.ok:
            raise UploadUrlError(
                f"{UPLOAD_URL_FAILED}: {upload.error}" if upload.error else UPLOAD_URL_FAILED
            )

        storage_path = upload.data["path"]
        try:
            status_code = await self._functions.upload_binary(
                upload.data["signedUrl"], media.data, media.mime_type
            )
        except SupabaseNetworkError as exc:
            raise SendNetworkError(NETWORK_FAILURE) from exc
        if not 200 <= status_code < 300:
            raise BinaryUploadError(status_code)

        caption = compose.text.strip() or None
        payload = self._base_payload(conversation, correlation_id)
        payload.update(
            {
                "content": caption or "",
                "messageType": kind,
                "mediaStoragePath": storage_path,
                "mediaMimeType": media.mime_type,
                "mediaCaption": caption,
            }
        )
        return _checked(await self._functions.send_message(payload, token=self._token))

    def _reconcile(
        self, correlation_id: str, result: RemoteResult
    ) -> tuple[Message | None, str | None]:
        provider_message_id = result.data.get("providerMessageId")
        message: Message | None = None
        row = result.data.get("message")
        if isinstance(row, dict):
            try:
                message = Message.model_validate(row)
            except ValidationError:
                logger.warning(
                    "whatsapp.send_response_row_invalid", extra={"row_id": row.get("id")}
                )
        if self.message_store is not None:
            self.message_store.confirm(
                correlation_id, message=message, provider_message_id=provider_message_id
            )
        return message, provider_message_id

    def _discard(self, correlation_id: str) -> None:
        if self.message_store is not None:
            self.message_store.discard(correlation_id)


def _checked(result: RemoteResult) -> RemoteResult:
    if result.kind == "network":
        raise SendNetworkError(NETWORK_FAILURE)
    if not result.ok:
        raise RemoteSendRejected(result.error or SEND_FALLBACK)
    return result


def _rejected(exc: SendError) -> SendOutcome:
    return SendOutcome(status="rejected", notice=exc.notice())
