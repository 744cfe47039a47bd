"""Sessão de inbox: uma organização/instância e a conversa aberta."""

from __future__ import annotations

import asyncio

from app.core.config import settings
from app.core.logging import get_logger, log_event
from app.repositories.inbox import InboxRepository
from app.services.edge_functions import EdgeFunctionsClient
from app.services.realtime import SupabaseRealtimeFeed

from .cooldown import SendCooldown
from .media import PendingMedia, audio_from_data_url, image_from_file
from .realtime import ChangeFeed, PollingFallback, RealtimeBridge
from .schemas import Conversation
from .service import ComposeState, OutboundSendOrchestrator, SendOutcome
from .stores import ConversationStore, MessageStore

logger = get_logger("app.channels.whatsapp.session")


class InboxSession:
    """Liga caches, realtime, polling e o orquestrador de envio."""

    def __init__(
        self,
        *,
        token: str | None,
        organization_id: str,
        instance_id: str | None = None,
        repository: InboxRepository | None = None,
        functions: EdgeFunctionsClient | None = None,
        cooldown: SendCooldown | None = None,
        feed: ChangeFeed | None = None,
    ) -> None:
        self._token = token
        self.organization_id = organization_id
        self.instance_id = instance_id
        self._repository = repository or InboxRepository()
        self._functions = functions or EdgeFunctionsClient()
        self._cooldown = cooldown or SendCooldown(settings.send_cooldown_ms)
        self._feed = feed
        self.conversations = ConversationStore(
            self._repository,
            token=token,
            organization_id=organization_id,
            instance_id=instance_id,
        )
        self.bridge = RealtimeBridge(self.conversations)
        self.messages: MessageStore | None = None
        self.selected: Conversation | None = None
        self.compose = ComposeState()
        self._orchestrator: OutboundSendOrchestrator | None = None
        self._tasks: dict[str, asyncio.Task] = {}

    async def start(self) -> None:
        await self.conversations.refresh()
        feed = self._feed or SupabaseRealtimeFeed(
            token=self._token, organization_id=self.organization_id
        )
        self._spawn("realtime", self.bridge.run(feed))
        self._spawn(
            "conversations_poll",
            PollingFallback(
                self.conversations.refresh,
                interval_ms=settings.conversation_poll_interval_ms,
                name="conversations",
            ).run(),
        )
        log_event(
            logger,
            "whatsapp.session_started",
            organization_id=self.organization_id,
            instance_id=self.instance_id,
        )

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def select_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            await self.conversations.refresh()
            conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise LookupError(f"Conversa {conversation_id} não encontrada")

        self.selected = conversation
        self.compose = ComposeState()
        self.messages = MessageStore(
            self._repository, token=self._token, conversation_id=conversation.id
        )
        self.bridge.attach(self.messages)
        self._orchestrator = OutboundSendOrchestrator(
            functions=self._functions,
            cooldown=self._cooldown,
            token=self._token,
            organization_id=self.organization_id,
            message_store=self.messages,
            conversation_store=self.conversations,
        )
        await self.messages.refresh()
        if conversation.unread_count:
            await self.conversations.mark_read(conversation.id)

        self._cancel("messages_poll")
        self._spawn(
            "messages_poll",
            PollingFallback(
                self.messages.refresh,
                interval_ms=settings.message_poll_interval_ms,
                name="messages",
            ).run(),
        )
        return conversation

    def attach_image(
        self, data: bytes, content_type: str | None, *, filename: str | None = None
    ) -> PendingMedia:
        self.compose.pending_media = image_from_file(
            data, content_type, filename=filename, max_bytes=settings.media_max_bytes
        )
        return self.compose.pending_media

    def attach_audio(self, data_url: str) -> PendingMedia:
        self.compose.pending_media = audio_from_data_url(
            data_url, max_bytes=settings.media_max_bytes
        )
        return self.compose.pending_media

    def clear_media(self) -> None:
        if self.compose.pending_media is not None:
            self.compose.pending_media.preview_url = None
        self.compose.pending_media = None

    async def send(self) -> SendOutcome:
        if self.selected is None or self._orchestrator is None:
            raise RuntimeError("Nenhuma conversa selecionada")
        return await self._orchestrator.handle_send(self.selected, self.compose)

    @property
    def tasks(self) -> dict[str, asyncio.Task]:
        return dict(self._tasks)

    def _spawn(self, name: str, coro) -> None:
        task = asyncio.create_task(coro, name=f"inbox:{name}")
        task.add_done_callback(self._on_task_done)
        self._tasks[name] = task

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        name = task.get_name().removeprefix("inbox:")
        logger.error(
            "realtime.bridge_stopped" if name == "realtime" else "whatsapp.poll_stopped",
            extra={"task": name, "organization_id": self.organization_id, "error": str(exc)},
            exc_info=exc,
        )

    def _cancel(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        if task is not None:
            task.cancel()
