"""Ponte entre o change feed do Supabase e os caches do inbox."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol

from app.core.logging import get_logger, log_event
from app.repositories.inbox import SupabaseError

from .schemas import ChangeEvent
from .stores import ConversationStore, MessageStore

logger = get_logger("app.channels.whatsapp.realtime")

MESSAGES_TABLE = "whatsapp_messages"
CONVERSATIONS_TABLE = "whatsapp_conversations"


class ChangeFeed(Protocol):
    def events(self) -> AsyncIterator[ChangeEvent]: ...


class RealtimeBridge:
    """Converte notificações em invalidação de cache.

    Conversas são sempre relidas. Para mensagens novas da conversa aberta,
    a linha recebida é anexada na hora (se ainda não existir) antes da
    releitura. Não há reassinatura automática quando o feed cai; o polling
    cobre esse caso.
    """

    def __init__(
        self,
        conversation_store: ConversationStore,
        message_store: MessageStore | None = None,
    ) -> None:
        self.conversation_store = conversation_store
        self.message_store = message_store
        self.events_seen = 0

    def attach(self, message_store: MessageStore | None) -> None:
        self.message_store = message_store

    async def handle(self, event: ChangeEvent) -> None:
        self.events_seen += 1
        if event.table == CONVERSATIONS_TABLE:
            await self.conversation_store.invalidate()
            return
        if event.table != MESSAGES_TABLE:
            return

        store = self.message_store
        if store is not None and event.new.get("conversation_id") == store.conversation_id:
            if event.event == "INSERT":
                store.apply_insert(event.new)
            else:
                store.apply_update(event.new)
            await store.invalidate()
        if event.event == "INSERT":
            # Nova mensagem muda last_message_at/unread_count da conversa
            await self.conversation_store.invalidate()

    async def run(self, feed: ChangeFeed) -> None:
        async for event in feed.events():
            await self.handle(event)
        log_event(logger, "realtime.feed_closed", events_seen=self.events_seen)


class PollingFallback:
    """Relê um cache em intervalo fixo, esteja o realtime saudável ou não."""

    def __init__(
        self,
        refresh: Callable[[], Awaitable[Any]],
        *,
        interval_ms: int,
        name: str,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._refresh = refresh
        self.interval_ms = interval_ms
        self.name = name
        self._sleep = sleep

    async def run(self, *, max_cycles: int | None = None) -> None:
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            await self._sleep(self.interval_ms / 1000)
            cycles += 1
            try:
                await self._refresh()
            except SupabaseError as exc:
                logger.warning("realtime.poll_failed", extra={"poller": self.name, "error": str(exc)})
