"""Empacotamento da mídia local (áudio gravado, imagem selecionada) em bytes."""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass

from .schemas import MediaKind

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^,]+?);base64,(?P<payload>.*)$", re.DOTALL)


class MediaError(ValueError):
    """Mídia local inválida ou impossível de decodificar."""


@dataclass(slots=True)
class PendingMedia:
    """Mídia aguardando envio no campo de composição.

    `preview_url` é a referência local usada para pré-visualização; é
    liberada quando o envio conclui.
    """

    kind: MediaKind
    mime_type: str
    data: bytes
    preview_url: str | None = None
    filename: str | None = None

    @property
    def size(self) -> int:
        return len(self.data)


def decode_data_url(data_url: str) -> tuple[str, bytes]:
    """Converte `data:<mime>;base64,<payload>` em (mime, bytes)."""
    match = _DATA_URL_RE.match(data_url.strip())
    if not match:
        raise MediaError("Data URL inválida (esperado data:<mime>;base64,...)")
    # Parâmetros como `;codecs=opus` ficam de fora do Content-Type do upload
    mime = match.group("mime").split(";")[0].strip().lower()
    try:
        data = base64.b64decode(match.group("payload"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MediaError("Conteúdo base64 inválido") from exc
    if not data:
        raise MediaError("Mídia vazia")
    return mime, data


def audio_from_data_url(data_url: str, *, max_bytes: int | None = None) -> PendingMedia:
    mime, data = decode_data_url(data_url)
    if not mime.startswith("audio/"):
        raise MediaError(f"Tipo de áudio não suportado: {mime}")
    _check_size(data, max_bytes)
    return PendingMedia(kind="audio", mime_type=mime, data=data, preview_url=data_url)


def image_from_file(
    data: bytes,
    content_type: str | None,
    *,
    filename: str | None = None,
    max_bytes: int | None = None,
) -> PendingMedia:
    mime = (content_type or "").split(";")[0].strip().lower()
    if not mime.startswith("image/"):
        raise MediaError("Selecione um arquivo de imagem")
    if not data:
        raise MediaError("Mídia vazia")
    _check_size(data, max_bytes)
    return PendingMedia(kind="image", mime_type=mime, data=data, filename=filename)


def _check_size(data: bytes, max_bytes: int | None) -> None:
    if max_bytes is not None and len(data) > max_bytes:
        raise MediaError(f"Mídia excede o limite de {max_bytes // (1024 * 1024)} MB")
