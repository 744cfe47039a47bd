"""Esquemas Pydantic do inbox de WhatsApp."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Direction = Literal["inbound", "outbound"]
MessageType = Literal["text", "image", "audio", "video", "document", "sticker"]
MessageStatus = Literal["sending", "sent", "delivered", "read", "failed"]
MediaKind = Literal["image", "audio"]

# Ordem das transições de status; `failed` é terminal a partir de qualquer ponto.
STATUS_RANK: dict[str, int] = {"sending": 0, "sent": 1, "delivered": 2, "read": 3}


class MessagingInstance(BaseModel):
    """Conexão de WhatsApp (um número) da organização."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    phone_number: str | None = None
    is_connected: bool = False


class Conversation(BaseModel):
    """Thread entre a organização e um contato (ou grupo) do WhatsApp."""

    model_config = ConfigDict(extra="ignore")

    id: str
    organization_id: str | None = None
    instance_id: str | None = None
    phone_number: str
    chat_id: str | None = None
    is_group: bool = False
    contact_name: str | None = None
    contact_profile_pic: str | None = None
    last_message_at: datetime | None = None
    unread_count: int = 0
    lead_id: str | None = None

    @property
    def display_name(self) -> str:
        return self.contact_name or self.phone_number


class Message(BaseModel):
    """Mensagem de uma conversa, recebida ou enviada."""

    model_config = ConfigDict(extra="ignore")

    id: str
    conversation_id: str
    instance_id: str | None = None
    direction: Direction
    message_type: MessageType = "text"
    content: str | None = None
    media_url: str | None = None
    media_caption: str | None = None
    created_at: datetime
    status: MessageStatus | None = None
    is_from_bot: bool = False
    provider_message_id: str | None = None
    # Só existe localmente, na mensagem otimista; a tabela não tem essa coluna
    client_message_id: str | None = None


class ChangeEvent(BaseModel):
    """Notificação do change feed do Supabase Realtime."""

    event: Literal["INSERT", "UPDATE"]
    table: str
    new: dict[str, Any] = Field(default_factory=dict)


class TextSendRequest(BaseModel):
    """Payload de POST /conversations/{id}/messages."""

    text: str = Field(..., max_length=4096, description="Texto digitado no campo de composição.")


class AudioSendRequest(BaseModel):
    """Payload de POST /conversations/{id}/media/audio."""

    data_url: str = Field(
        ...,
        description="Áudio gravado no navegador, como data URL base64 (ex. data:audio/webm;base64,...).",
    )
    caption: str | None = Field(default=None, max_length=1024)


class LeadLinkRequest(BaseModel):
    """Payload de PUT /conversations/{id}/lead; `null` desvincula."""

    lead_id: str | None = None


class SendResponse(BaseModel):
    """Resposta de um envio aceito."""

    ok: bool = True
    message: Message | None = None
    provider_message_id: str | None = None


class ConversationList(BaseModel):
    items: list[Conversation] = Field(default_factory=list)
    total_unread: int = 0


class MessageList(BaseModel):
    conversation_id: str
    items: list[Message] = Field(default_factory=list)
