"""Testes do repositório do inbox contra um PostgREST simulado."""

import json

import httpx
import pytest

from app.repositories.inbox import InboxRepository, SupabaseError, supabase_headers


def _repository(handler) -> InboxRepository:
    return InboxRepository(transport=httpx.MockTransport(handler))


def test_headers_prefer_user_token(supabase_settings) -> None:
    headers = supabase_headers("user-jwt")
    assert headers["Authorization"] == "Bearer user-jwt"
    assert headers["apikey"] == "anon-key"

    service = supabase_headers(None, prefer="return=minimal")
    assert service["Authorization"] == "Bearer service-role-key"
    assert service["Prefer"] == "return=minimal"


def test_headers_without_any_credential_fail(monkeypatch: pytest.MonkeyPatch, supabase_settings) -> None:
    from app.core.config import settings

    monkeypatch.setattr(settings, "supabase_service_role", None)
    with pytest.raises(SupabaseError):
        supabase_headers(None)


async def test_list_conversations_orders_with_nulls_last(supabase_settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": "conv-1"}])

    rows = await _repository(handler).list_conversations(
        token="jwt", organization_id="org-1", instance_id="inst-1", unread_only=True
    )

    assert rows == [{"id": "conv-1"}]
    params = seen[0].url.params
    assert seen[0].url.path == "/rest/v1/whatsapp_conversations"
    assert params["order"] == "last_message_at.desc.nullslast"
    assert params["organization_id"] == "eq.org-1"
    assert params["instance_id"] == "eq.inst-1"
    assert params["unread_count"] == "gt.0"


async def test_list_conversations_relies_on_rls_without_organization(supabase_settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    await _repository(handler).list_conversations(token="jwt")

    assert "organization_id" not in seen[0].url.params


async def test_list_messages_returns_chronological_order(supabase_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["order"] == "created_at.desc"
        assert request.url.params["limit"] == "2"
        return httpx.Response(200, json=[{"id": "m3"}, {"id": "m2"}])

    rows = await _repository(handler).list_messages(token="jwt", conversation_id="conv-1", limit=2)

    assert [row["id"] for row in rows] == ["m2", "m3"]


async def test_list_instances_keeps_connected_only(supabase_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["user_id"] == "eq.user-1"
        assert request.url.params["can_view"] == "eq.true"
        return httpx.Response(
            200,
            json=[
                {"instance_id": "a", "whatsapp_instances": {"id": "a", "name": "Vendas", "is_connected": True}},
                {"instance_id": "b", "whatsapp_instances": {"id": "b", "name": "Suporte", "is_connected": False}},
            ],
        )

    instances = await _repository(handler).list_instances(token="jwt", user_id="user-1")

    assert [instance["id"] for instance in instances] == ["a"]


async def test_mark_read_patches_unread_count(supabase_settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    await _repository(handler).mark_read(token="jwt", conversation_id="conv-1")

    assert seen[0].method == "PATCH"
    assert seen[0].url.params["id"] == "eq.conv-1"
    assert json.loads(seen[0].content) == {"unread_count": 0}


async def test_link_lead_without_rows_is_not_found(supabase_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["prefer"] == "return=representation"
        return httpx.Response(200, json=[])

    with pytest.raises(SupabaseError) as excinfo:
        await _repository(handler).link_lead(token="jwt", conversation_id="conv-1", lead_id="lead-1")

    assert excinfo.value.status_code == 404


async def test_http_errors_raise_with_status(supabase_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "JWT expired"})

    with pytest.raises(SupabaseError) as excinfo:
        await _repository(handler).fetch_conversation(token="jwt", conversation_id="conv-1")

    assert excinfo.value.status_code == 401


async def test_message_select_names_only_table_columns(supabase_settings) -> None:
    table_columns = {
        "contact_id", "content", "conversation_id", "created_at", "direction", "id",
        "instance_id", "is_from_bot", "media_caption", "media_url", "message_type",
        "provider", "provider_message_id", "status", "z_api_message_id",
    }
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    await _repository(handler).list_messages(token="jwt", conversation_id="conv-1")

    selected = set(seen[0].url.params["select"].split(","))
    assert selected <= table_columns
    assert "provider_message_id" in selected
