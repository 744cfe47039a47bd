"""Fixtures compartilhadas pelos testes."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.config import settings
from app.main import app
from app.services.edge_functions import RemoteResult


@pytest.fixture(name="async_client")
async def fixture_async_client() -> AsyncClient:
    """Retorna um cliente assíncrono contra a app principal usando ASGITransport."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture(name="supabase_settings")
def fixture_supabase_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "supabase_url", "https://proj.supabase.test")
    monkeypatch.setattr(settings, "supabase_anon", "anon-key")
    monkeypatch.setattr(settings, "supabase_service_role", "service-role-key")


@pytest.fixture(name="make_conversation")
def fixture_make_conversation() -> Callable[..., dict[str, Any]]:
    def factory(**overrides: Any) -> dict[str, Any]:
        row = {
            "id": "conv-1",
            "organization_id": "org-1",
            "instance_id": "inst-1",
            "phone_number": "5511999990000",
            "chat_id": "5511999990000@s.whatsapp.net",
            "is_group": False,
            "contact_name": "Maria Souza",
            "last_message_at": "2024-05-01T12:00:00+00:00",
            "unread_count": 0,
            "lead_id": None,
        }
        row.update(overrides)
        return row

    return factory


@pytest.fixture(name="make_message")
def fixture_make_message() -> Callable[..., dict[str, Any]]:
    def factory(**overrides: Any) -> dict[str, Any]:
        row = {
            "id": "msg-1",
            "conversation_id": "conv-1",
            "instance_id": "inst-1",
            "direction": "inbound",
            "message_type": "text",
            "content": "Olá",
            "created_at": "2024-05-01T12:00:00+00:00",
            "status": None,
        }
        row.update(overrides)
        return row

    return factory


class FakeRepository:
    """Repositório em memória com a mesma interface do InboxRepository."""

    def __init__(self) -> None:
        self.conversations: list[dict[str, Any]] = []
        self.messages: list[dict[str, Any]] = []
        self.instances: list[dict[str, Any]] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.error: Exception | None = None

    def _record(self, name: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((name, kwargs))
        if self.error is not None:
            raise self.error

    async def list_instances(self, **kwargs: Any) -> list[dict[str, Any]]:
        self._record("list_instances", kwargs)
        return list(self.instances)

    async def list_conversations(self, **kwargs: Any) -> list[dict[str, Any]]:
        self._record("list_conversations", kwargs)
        return [dict(row) for row in self.conversations]

    async def fetch_conversation(self, **kwargs: Any) -> dict[str, Any] | None:
        self._record("fetch_conversation", kwargs)
        return next(
            (dict(row) for row in self.conversations if row["id"] == kwargs["conversation_id"]),
            None,
        )

    async def list_messages(self, **kwargs: Any) -> list[dict[str, Any]]:
        self._record("list_messages", kwargs)
        return [
            dict(row)
            for row in self.messages
            if row["conversation_id"] == kwargs["conversation_id"]
        ]

    async def mark_read(self, **kwargs: Any) -> None:
        self._record("mark_read", kwargs)
        for row in self.conversations:
            if row["id"] == kwargs["conversation_id"]:
                row["unread_count"] = 0

    async def link_lead(self, **kwargs: Any) -> dict[str, Any]:
        self._record("link_lead", kwargs)
        for row in self.conversations:
            if row["id"] == kwargs["conversation_id"]:
                row["lead_id"] = kwargs["lead_id"]
                return dict(row)
        raise AssertionError("conversa inexistente no fake")

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]


class FakeFunctions:
    """Edge Functions falsas; registra a ordem das chamadas."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.upload_result = RemoteResult(
            kind="ok",
            data={
                "success": True,
                "signedUrl": "https://proj.supabase.test/storage/v1/upload/sign/abc",
                "path": "org-1/conv-1/abc",
            },
            status_code=200,
        )
        self.upload_status: int | Exception = 200
        self.send_result = RemoteResult(
            kind="ok", data={"success": True, "providerMessageId": "wamid.1"}, status_code=200
        )

    async def create_upload_url(self, **kwargs: Any) -> RemoteResult:
        self.calls.append(("create_upload_url", kwargs))
        return self.upload_result

    async def upload_binary(self, signed_url: str, data: bytes, mime_type: str) -> int:
        self.calls.append(
            ("upload_binary", {"signed_url": signed_url, "data": data, "mime_type": mime_type})
        )
        if isinstance(self.upload_status, Exception):
            raise self.upload_status
        return self.upload_status

    async def send_message(self, payload: dict[str, Any], *, token: str | None) -> RemoteResult:
        self.calls.append(("send_message", payload))
        return self.send_result

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def payload(self, name: str) -> Any:
        return next(args for call, args in self.calls if call == name)


@pytest.fixture(name="fake_repository")
def fixture_fake_repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture(name="fake_functions")
def fixture_fake_functions() -> FakeFunctions:
    return FakeFunctions()


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture(name="clock")
def fixture_clock() -> FakeClock:
    return FakeClock()
