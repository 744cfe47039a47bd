"""Helpers de credenciais: bearer token, claims do JWT e mascaramento."""

import base64
import binascii
import json
from typing import Any


def parse_bearer(authorization: str | None) -> str | None:
    """Extrai o token de um header `Authorization: Bearer <token>`."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def jwt_claims(token: str | None) -> dict[str, Any]:
    """Decodifica o payload do JWT sem verificar a assinatura.

    A verificação fica a cargo do Supabase (RLS), que recebe o mesmo token;
    aqui só lemos `sub` para logs e chaves de sessão.
    """
    if not token:
        return {}
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment))
    except (binascii.Error, ValueError):
        return {}
    return claims if isinstance(claims, dict) else {}


def mask_secret(value: str | None) -> str | None:
    """Mascara segredos para logging seguro."""
    if not value:
        return value
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"
