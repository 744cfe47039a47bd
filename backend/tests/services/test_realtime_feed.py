"""Testes do cliente Supabase Realtime (frames Phoenix)."""

import json

import pytest
from websockets.exceptions import ConnectionClosed

from app.services.realtime import RealtimeError, SupabaseRealtimeFeed, parse_frame


class FakeSocket:
    def __init__(self, frames, *, close_with: Exception | None = None) -> None:
        self.frames = list(frames)
        self.close_with = close_with
        self.sent: list[dict] = []

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame
        if self.close_with is not None:
            raise self.close_with

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc) -> bool:
        return False


def _change(change: str, table: str, record: dict) -> str:
    return json.dumps(
        {
            "topic": "realtime:inbox-org-1",
            "event": "postgres_changes",
            "payload": {"data": {"type": change, "table": table, "record": record}, "ids": [1]},
            "ref": None,
        }
    )


def test_parse_postgres_changes_frame() -> None:
    events = parse_frame(_change("INSERT", "whatsapp_messages", {"id": "m1"}))
    assert len(events) == 1
    assert events[0].event == "INSERT"
    assert events[0].table == "whatsapp_messages"
    assert events[0].new == {"id": "m1"}


def test_parse_legacy_frame() -> None:
    raw = json.dumps(
        {"event": "UPDATE", "payload": {"table": "whatsapp_conversations", "record": {"id": "c1"}}}
    )
    events = parse_frame(raw)
    assert [(e.event, e.table) for e in events] == [("UPDATE", "whatsapp_conversations")]


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        json.dumps([1, 2]),
        json.dumps({"event": "phx_reply", "payload": {"status": "ok", "response": {}}}),
        json.dumps({"event": "presence_state", "payload": {}}),
        _change("DELETE", "whatsapp_messages", {}),
    ],
)
def test_parse_ignores_non_change_frames(raw: str) -> None:
    assert parse_frame(raw) == []


def test_parse_raises_on_rejected_subscription() -> None:
    raw = json.dumps(
        {"event": "phx_reply", "payload": {"status": "error", "response": {"reason": "jwt"}}}
    )
    with pytest.raises(RealtimeError):
        parse_frame(raw)


def test_join_frame_filters_only_conversations_by_organization(supabase_settings) -> None:
    feed = SupabaseRealtimeFeed(token="jwt", organization_id="org-1")

    frame = feed.join_frame()

    assert frame["topic"] == "realtime:inbox-org-1"
    assert frame["event"] == "phx_join"
    assert frame["payload"]["access_token"] == "jwt"
    changes = {
        change["table"]: change for change in frame["payload"]["config"]["postgres_changes"]
    }
    assert set(changes) == {"whatsapp_messages", "whatsapp_conversations"}
    assert changes["whatsapp_conversations"]["filter"] == "organization_id=eq.org-1"
    # Mensagens não têm organization_id; ficam restritas pelo RLS do access_token
    assert "filter" not in changes["whatsapp_messages"]


def test_socket_url_uses_websocket_scheme(supabase_settings) -> None:
    feed = SupabaseRealtimeFeed(token=None, organization_id="org-1")
    assert feed.socket_url() == (
        "wss://proj.supabase.test/realtime/v1/websocket?apikey=anon-key&vsn=1.0.0"
    )


async def test_events_joins_then_yields_changes(supabase_settings) -> None:
    socket = FakeSocket(
        [
            json.dumps({"event": "phx_reply", "payload": {"status": "ok", "response": {}}}),
            _change("INSERT", "whatsapp_messages", {"id": "m1"}),
            _change("UPDATE", "whatsapp_conversations", {"id": "c1"}),
        ]
    )
    urls: list[str] = []

    def connect(url: str) -> FakeSocket:
        urls.append(url)
        return socket

    feed = SupabaseRealtimeFeed(
        token="jwt", organization_id="org-1", heartbeat_seconds=60, connect=connect
    )

    events = [event async for event in feed.events()]

    assert [event.table for event in events] == ["whatsapp_messages", "whatsapp_conversations"]
    assert socket.sent[0]["event"] == "phx_join"
    assert urls[0].startswith("wss://")


async def test_events_end_quietly_when_connection_drops(supabase_settings) -> None:
    socket = FakeSocket(
        [_change("INSERT", "whatsapp_messages", {"id": "m1"})],
        close_with=ConnectionClosed(None, None),
    )
    feed = SupabaseRealtimeFeed(
        token="jwt", organization_id="org-1", heartbeat_seconds=60, connect=lambda url: socket
    )

    events = [event async for event in feed.events()]

    assert len(events) == 1
