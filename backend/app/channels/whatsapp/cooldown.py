"""Intervalo mínimo entre envios, para não ser limitado pelo provedor."""

from __future__ import annotations

import time
from collections.abc import Callable, Hashable


def monotonic_ms() -> float:
    return time.monotonic() * 1000


class SendCooldown:
    """Guarda o instante do último envio aceito por chave.

    O estado vive só na memória do processo: dois processos (ou abas) podem
    cada um satisfazer seu próprio intervalo. Texto, imagem e áudio
    compartilham a mesma chave.
    """

    def __init__(self, window_ms: int, *, clock: Callable[[], float] = monotonic_ms) -> None:
        self.window_ms = window_ms
        self._clock = clock
        self._last_sent: dict[Hashable, float] = {}

    def remaining_ms(self, key: Hashable) -> float:
        last = self._last_sent.get(key)
        if last is None:
            return 0.0
        return max(0.0, self.window_ms - (self._clock() - last))

    def is_ready(self, key: Hashable) -> bool:
        return self.remaining_ms(key) <= 0

    def mark_sent(self, key: Hashable) -> None:
        self._last_sent[key] = self._clock()

    def reset(self, key: Hashable | None = None) -> None:
        if key is None:
            self._last_sent.clear()
        else:
            self._last_sent.pop(key, None)
