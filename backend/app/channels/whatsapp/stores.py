"""Caches de conversas e mensagens do inbox.

Os caches seguem o modelo "push para invalidar": qualquer notificação ou
envio marca o cache como desatualizado e dispara uma nova leitura
autoritativa. A única exceção é o append direto de mensagens novas da
conversa aberta, que evita latência visível.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from pydantic import ValidationError

from app.core.logging import get_logger
from app.repositories.inbox import SupabaseError

from .schemas import STATUS_RANK, Conversation, Message

logger = get_logger("app.channels.whatsapp.stores")


class InboxReader(Protocol):
    async def list_conversations(self, **kwargs: Any) -> list[dict[str, Any]]: ...
    async def list_messages(self, **kwargs: Any) -> list[dict[str, Any]]: ...
    async def mark_read(self, **kwargs: Any) -> None: ...
    async def link_lead(self, **kwargs: Any) -> dict[str, Any]: ...


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def sort_conversations(items: Iterable[Conversation]) -> list[Conversation]:
    """Ordena por última atividade, mais recente primeiro; sem data vai para o fim."""
    return sorted(
        items,
        key=lambda conv: (
            conv.last_message_at is None,
            -_as_utc(conv.last_message_at).timestamp() if conv.last_message_at else 0.0,
        ),
    )


def advance_status(current: str | None, new: str | None) -> str | None:
    """Aplica uma transição de status sem retroceder (sent não volta para sending)."""
    if new is None or new == current:
        return current
    if new == "failed" or current is None:
        return new
    if current == "failed":
        return current
    if STATUS_RANK.get(new, -1) > STATUS_RANK.get(current, -1):
        return new
    return current


class ConversationStore:
    """Lista de conversas de uma organização (opcionalmente de uma instância)."""

    def __init__(
        self,
        repository: InboxReader,
        *,
        token: str | None,
        organization_id: str | None = None,
        instance_id: str | None = None,
        limit: int = 50,
    ) -> None:
        self._repository = repository
        self._token = token
        self.organization_id = organization_id
        self.instance_id = instance_id
        self.limit = limit
        self.stale = True
        self._items: list[Conversation] = []
        self._lock = asyncio.Lock()

    @property
    def items(self) -> list[Conversation]:
        return list(self._items)

    def get(self, conversation_id: str) -> Conversation | None:
        return next((conv for conv in self._items if conv.id == conversation_id), None)

    async def refresh(self) -> list[Conversation]:
        async with self._lock:
            rows = await self._repository.list_conversations(
                token=self._token,
                organization_id=self.organization_id,
                instance_id=self.instance_id,
                limit=self.limit,
            )
            self._items = sort_conversations(_parse_rows(Conversation, rows))
            self.stale = False
        return self.items

    async def invalidate(self) -> None:
        """Marca como desatualizado e relê; falhas deixam o cache marcado como stale."""
        self.stale = True
        try:
            await self.refresh()
        except SupabaseError as exc:
            logger.warning(
                "whatsapp.conversations_refetch_failed",
                extra={"organization_id": self.organization_id, "error": str(exc)},
            )

    def search(self, term: str | None) -> list[Conversation]:
        needle = (term or "").strip().lower()
        if not needle:
            return self.items
        return [
            conv
            for conv in self._items
            if needle in (conv.contact_name or "").lower() or needle in conv.phone_number
        ]

    def total_unread(self) -> int:
        return sum(conv.unread_count for conv in self._items)

    async def mark_read(self, conversation_id: str) -> None:
        await self._repository.mark_read(token=self._token, conversation_id=conversation_id)
        self._replace(conversation_id, unread_count=0)
        await self.invalidate()

    async def link_lead(self, conversation_id: str, lead_id: str | None) -> Conversation:
        row = await self._repository.link_lead(
            token=self._token, conversation_id=conversation_id, lead_id=lead_id
        )
        conversation = Conversation.model_validate(row)
        self._items = sort_conversations(
            [conversation if conv.id == conversation_id else conv for conv in self._items]
        )
        await self.invalidate()
        return conversation

    def _replace(self, conversation_id: str, **changes: Any) -> None:
        self._items = [
            conv.model_copy(update=changes) if conv.id == conversation_id else conv
            for conv in self._items
        ]


@dataclass(slots=True)
class Pending:
    """Mensagem otimista, ainda sem id do servidor."""

    local_id: str
    message: Message


@dataclass(slots=True)
class Confirmed:
    """Mensagem com id atribuído pelo servidor."""

    server_id: str
    message: Message


Entry = Pending | Confirmed


class MessageStore:
    """Histórico ordenado (created_at ascendente) de uma conversa."""

    def __init__(
        self,
        repository: InboxReader,
        *,
        token: str | None,
        conversation_id: str,
        limit: int = 100,
    ) -> None:
        self._repository = repository
        self._token = token
        self.conversation_id = conversation_id
        self.limit = limit
        self.stale = True
        self._entries: list[Entry] = []
        self._lock = asyncio.Lock()

    @property
    def entries(self) -> list[Entry]:
        return list(self._entries)

    def messages(self) -> list[Message]:
        ordered = sorted(
            enumerate(self._entries),
            key=lambda pair: (_as_utc(pair[1].message.created_at), pair[0]),
        )
        return [entry.message for _, entry in ordered]

    def has(self, server_id: str) -> bool:
        return self._confirmed_index(server_id) is not None

    async def refresh(self) -> list[Message]:
        async with self._lock:
            rows = await self._repository.list_messages(
                token=self._token, conversation_id=self.conversation_id, limit=self.limit
            )
            self.replace_all(_parse_rows(Message, rows))
            self.stale = False
        return self.messages()

    async def invalidate(self) -> None:
        self.stale = True
        try:
            await self.refresh()
        except SupabaseError as exc:
            logger.warning(
                "whatsapp.messages_refetch_failed",
                extra={"conversation_id": self.conversation_id, "error": str(exc)},
            )

    def replace_all(self, messages: Iterable[Message]) -> None:
        """Substitui as confirmadas pela lista autoritativa.

        Pendentes (em `sending` ou já `sent` sem linha do servidor) sobrevivem
        até a releitura trazer uma linha com o mesmo `provider_message_id`.
        """
        confirmed = [Confirmed(server_id=msg.id, message=msg) for msg in messages]
        known_provider_ids = {
            entry.message.provider_message_id
            for entry in confirmed
            if entry.message.provider_message_id
        }
        survivors = [
            entry
            for entry in self._entries
            if isinstance(entry, Pending)
            and entry.message.status in ("sending", "sent")
            and entry.message.provider_message_id not in known_provider_ids
        ]
        self._entries = [*confirmed, *survivors]

    def add_optimistic(self, message: Message) -> Pending:
        local_id = message.client_message_id or message.id
        entry = Pending(local_id=local_id, message=message)
        self._entries.append(entry)
        return entry

    def confirm(
        self,
        local_id: str,
        *,
        message: Message | None = None,
        provider_message_id: str | None = None,
    ) -> Entry | None:
        """Reconcilia a otimista com a resposta do envio."""
        index = self._pending_index(local_id)
        if message is not None:
            if self.has(message.id):
                # O realtime chegou primeiro; a otimista sai de cena.
                if index is not None:
                    del self._entries[index]
                return self._entries[self._confirmed_index(message.id)]
            confirmed = Confirmed(server_id=message.id, message=message)
            if index is None:
                self._entries.append(confirmed)
            else:
                self._entries[index] = confirmed
            return confirmed
        if index is None:
            return None
        if provider_message_id and self._confirmed_by_provider(provider_message_id) is not None:
            # A linha do servidor já chegou pelo realtime
            del self._entries[index]
            return None
        pending = self._entries[index]
        pending.message = pending.message.model_copy(
            update={
                "status": advance_status(pending.message.status, "sent"),
                "provider_message_id": provider_message_id,
            }
        )
        return pending

    def discard(self, local_id: str) -> None:
        index = self._pending_index(local_id)
        if index is not None:
            del self._entries[index]

    def apply_insert(self, row: dict[str, Any]) -> bool:
        """Anexa uma linha vinda do realtime; retorna False se já existir."""
        try:
            message = Message.model_validate(row)
        except ValidationError:
            logger.warning("whatsapp.realtime_row_invalid", extra={"row_id": row.get("id")})
            return False
        if message.conversation_id != self.conversation_id or self.has(message.id):
            return False

        index = None
        if message.provider_message_id:
            index = next(
                (
                    i
                    for i, entry in enumerate(self._entries)
                    if isinstance(entry, Pending)
                    and entry.message.provider_message_id == message.provider_message_id
                ),
                None,
            )
        confirmed = Confirmed(server_id=message.id, message=message)
        if index is None:
            self._entries.append(confirmed)
        else:
            self._entries[index] = confirmed
        return True

    def apply_update(self, row: dict[str, Any]) -> bool:
        """Aplica só transições de status em uma mensagem já conhecida."""
        server_id = row.get("id")
        index = self._confirmed_index(server_id) if server_id else None
        if index is None:
            return False
        entry = self._entries[index]
        status = advance_status(entry.message.status, row.get("status"))
        if status == entry.message.status:
            return False
        entry.message = entry.message.model_copy(update={"status": status})
        return True

    def _pending_index(self, local_id: str) -> int | None:
        return next(
            (
                i
                for i, entry in enumerate(self._entries)
                if isinstance(entry, Pending) and entry.local_id == local_id
            ),
            None,
        )

    def _confirmed_index(self, server_id: str) -> int | None:
        return next(
            (
                i
                for i, entry in enumerate(self._entries)
                if isinstance(entry, Confirmed) and entry.server_id == server_id
            ),
            None,
        )

    def _confirmed_by_provider(self, provider_message_id: str) -> int | None:
        return next(
            (
                i
                for i, entry in enumerate(self._entries)
                if isinstance(entry, Confirmed)
                and entry.message.provider_message_id == provider_message_id
            ),
            None,
        )


def _parse_rows(model: type[Any], rows: Iterable[dict[str, Any]]) -> list[Any]:
    parsed = []
    for row in rows:
        try:
            parsed.append(model.model_validate(row))
        except ValidationError:
            logger.warning(
                "whatsapp.row_skipped", extra={"model": model.__name__, "row_id": row.get("id")}
            )
    return parsed
