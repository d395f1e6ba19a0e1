"""Requests-per-minute pacing for multi-trace sampling against strict providers."""
from __future__ import annotations

import asyncio
from collections.abc import Callable
import time

from .cancellation import CancellationToken

Clock = Callable[[], float]


class RateLimiter:
    """トークンバケットで 1 分あたりの呼び出し数を均す。

    待機は ``CancellationToken.sleep`` 経由で行うため、実行キャンセル時は
    待ち時間の途中でも ``CancellationError`` で抜ける。
    """

    def __init__(self, rpm: int, *, burst: int = 1, clock: Clock | None = None) -> None:
        if rpm <= 0:
            raise ValueError("rpm must be greater than zero")
        if burst < 1:
            raise ValueError("burst must be at least one")
        self._interval_s = 60.0 / float(rpm)
        self._burst = float(burst)
        self._clock = clock or time.monotonic
        self._available = self._burst
        self._last_refill = self._clock()
        self._lock = asyncio.Lock()

    @property
    def interval_s(self) -> float:
        return self._interval_s

    def _take(self) -> float:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._available = min(self._burst, self._available + elapsed / self._interval_s)
        self._last_refill = now
        if self._available >= 1.0:
            self._available -= 1.0
            return 0.0
        return (1.0 - self._available) * self._interval_s

    async def acquire(self, cancellation: CancellationToken | None = None) -> None:
        token = cancellation or CancellationToken()
        while True:
            async with self._lock:
                wait = self._take()
            if wait <= 0.0:
                return
            await token.sleep(wait)


def resolve_rate_limiter(rpm: int | None, *, clock: Clock | None = None) -> RateLimiter | None:
    if rpm is None:
        return None
    return RateLimiter(rpm, clock=clock)


__all__ = ["RateLimiter", "resolve_rate_limiter"]
