"""Cliente do Supabase Realtime (protocolo de canais Phoenix sobre websocket)."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable, Iterable
from itertools import count
from typing import Any
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

from app.channels.whatsapp.realtime import CONVERSATIONS_TABLE, MESSAGES_TABLE
from app.channels.whatsapp.schemas import ChangeEvent
from app.core.config import settings
from app.core.logging import get_logger
from app.repositories.inbox import SupabaseError, supabase_base_url

logger = get_logger(__name__)

_CHANGE_TYPES = {"INSERT", "UPDATE"}

# `whatsapp_messages` não tem organization_id; o RLS do access_token restringe as linhas
_ORGANIZATION_FILTERS = {CONVERSATIONS_TABLE: "organization_id"}


class RealtimeError(SupabaseError):
    """Assinatura recusada pelo servidor de realtime."""


def parse_frame(raw: str | bytes) -> list[ChangeEvent]:
    """Extrai eventos de mudança de um frame Phoenix.

    Aceita o formato atual (`postgres_changes` com `payload.data`) e o
    legado, em que o evento vem com o nome do tipo e `payload.record`.
    """
    try:
        frame = json.loads(raw)
    except ValueError:
        logger.warning("realtime.frame_invalid")
        return []
    if not isinstance(frame, dict):
        return []

    event = frame.get("event")
    payload = frame.get("payload") or {}
    if event == "phx_reply" and payload.get("status") == "error":
        raise RealtimeError(f"Assinatura recusada: {payload.get('response')}")
    if event == "postgres_changes":
        data = payload.get("data") or {}
        change = data.get("type") or data.get("eventType")
        record = data.get("record") or data.get("new") or {}
    elif event in _CHANGE_TYPES:
        data = payload
        change = event
        record = payload.get("record") or {}
    else:
        return []

    if change not in _CHANGE_TYPES or not data.get("table"):
        return []
    return [ChangeEvent(event=change, table=data["table"], new=record)]


class SupabaseRealtimeFeed:
    """Assina mudanças das tabelas do inbox da organização."""

    def __init__(
        self,
        *,
        token: str | None,
        organization_id: str,
        tables: Iterable[str] = (MESSAGES_TABLE, CONVERSATIONS_TABLE),
        heartbeat_seconds: float | None = None,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._token = token
        self.organization_id = organization_id
        self.tables = tuple(tables)
        self.heartbeat_seconds = heartbeat_seconds or settings.realtime_heartbeat_seconds
        self._connect = connect
        self._refs = count(1)

    @property
    def topic(self) -> str:
        return f"realtime:inbox-{self.organization_id}"

    def socket_url(self) -> str:
        base = supabase_base_url()
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        apikey = settings.supabase_anon or settings.supabase_service_role or ""
        return f"{base}/realtime/v1/websocket?{urlencode({'apikey': apikey, 'vsn': '1.0.0'})}"

    def join_frame(self) -> dict[str, Any]:
        changes = [self._change_config(table) for table in self.tables]
        payload: dict[str, Any] = {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": changes,
            }
        }
        if self._token:
            payload["access_token"] = self._token
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": payload,
            "ref": str(next(self._refs)),
        }

    def _change_config(self, table: str) -> dict[str, Any]:
        config = {"event": "*", "schema": "public", "table": table}
        column = _ORGANIZATION_FILTERS.get(table)
        if column:
            config["filter"] = f"{column}=eq.{self.organization_id}"
        return config

    def heartbeat_frame(self) -> dict[str, Any]:
        return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": str(next(self._refs))}

    async def events(self) -> AsyncIterator[ChangeEvent]:
        async with self._connect(self.socket_url()) as socket:
            await socket.send(json.dumps(self.join_frame()))
            logger.info(
                "realtime.subscribed",
                extra={"topic": self.topic, "tables": list(self.tables)},
            )
            heartbeat = asyncio.create_task(self._heartbeat(socket))
            try:
                async for raw in socket:
                    for event in parse_frame(raw):
                        yield event
            except ConnectionClosed as exc:
                logger.warning(
                    "realtime.connection_closed", extra={"topic": self.topic, "reason": str(exc)}
                )
            finally:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)

    async def _heartbeat(self, socket: Any) -> None:
        try:
            while True:
                await asyncio.sleep(self.heartbeat_seconds)
                await socket.send(json.dumps(self.heartbeat_frame()))
        except ConnectionClosed:
            return
