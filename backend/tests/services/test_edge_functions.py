"""Testes do cliente das Edge Functions (respostas normalizadas em RemoteResult)."""

import json

import httpx
import pytest

from app.repositories.inbox import SupabaseNetworkError
from app.services.edge_functions import EdgeFunctionsClient, RemoteResult


@pytest.mark.parametrize(
    ("status", "payload", "kind", "error"),
    [
        (200, {"success": True, "providerMessageId": "wamid.1"}, "ok", None),
        (200, {"success": False, "error": "X"}, "rejected", "X"),
        (200, {"error": {"message": "Token expirado"}}, "rejected", "Token expirado"),
        (200, {"success": False, "message": "Instância desconectada"}, "rejected", "Instância desconectada"),
        (500, {}, "rejected", None),
        (502, "Bad Gateway", "rejected", "Bad Gateway"),
        (200, ["inesperado"], "rejected", "Resposta inesperada do servidor"),
    ],
)
def test_from_response_normalizes_error_shapes(status, payload, kind, error) -> None:
    result = RemoteResult.from_response(status, payload)
    assert result.kind == kind
    assert result.error == error


async def test_invoke_posts_to_function_with_user_token(supabase_settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "providerMessageId": "wamid.7"})

    client = EdgeFunctionsClient(transport=httpx.MockTransport(handler))
    result = await client.send_message({"content": "oi"}, token="user-jwt")

    assert result.ok
    assert result.data["providerMessageId"] == "wamid.7"
    request = seen[0]
    assert str(request.url) == "https://proj.supabase.test/functions/v1/whatsapp-send-message"
    assert request.headers["authorization"] == "Bearer user-jwt"
    assert request.headers["apikey"] == "anon-key"
    assert json.loads(request.content) == {"content": "oi"}


async def test_invoke_maps_transport_errors_to_network(supabase_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("dns", request=request)

    client = EdgeFunctionsClient(transport=httpx.MockTransport(handler))
    result = await client.send_message({}, token="jwt")

    assert result.kind == "network"


async def test_create_upload_url_requires_signed_url_and_path(supabase_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body == {
            "organizationId": "org-1",
            "conversationId": "conv-1",
            "mimeType": "audio/ogg",
            "kind": "audio",
        }
        return httpx.Response(200, json={"success": True, "path": "org-1/a.ogg"})

    client = EdgeFunctionsClient(transport=httpx.MockTransport(handler))
    result = await client.create_upload_url(
        token="jwt",
        organization_id="org-1",
        conversation_id="conv-1",
        mime_type="audio/ogg",
        kind="audio",
    )

    assert result.kind == "rejected"


async def test_upload_binary_puts_raw_bytes(supabase_settings) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(403, text="expired")

    client = EdgeFunctionsClient(transport=httpx.MockTransport(handler))
    status = await client.upload_binary("https://storage.test/signed?token=t", b"\x00\x01", "image/png")

    assert status == 403
    assert seen[0].method == "PUT"
    assert seen[0].headers["content-type"] == "image/png"
    assert seen[0].content == b"\x00\x01"


async def test_upload_binary_network_error_raises(supabase_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    client = EdgeFunctionsClient(transport=httpx.MockTransport(handler))
    with pytest.raises(SupabaseNetworkError):
        await client.upload_binary("https://storage.test/signed", b"x", "audio/ogg")
