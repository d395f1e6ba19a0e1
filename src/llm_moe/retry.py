"""Exponential backoff for rate-limited and transient provider failures."""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
import logging
import os
from typing import TypeVar

from .cancellation import CancellationToken
from .errors import ConfigError, RateLimitError, RetriableError, TimeoutError

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)

RETRY_COUNT_ENV = "LLM_MOE_RETRY_COUNT"
BACKOFF_ENV = "LLM_MOE_BACKOFF_S"

__all__ = ["RetryPolicy", "call_with_retry", "is_retryable", "with_timeout"]


def is_retryable(exc: BaseException) -> bool:
    # TimeoutError は「遅いプロバイダ」として区別するため再試行しない
    return isinstance(exc, RateLimitError | RetriableError)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """再試行回数と指数バックオフの基準秒。"""

    max_retries: int = 3
    backoff_s: float = 1.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.backoff_s < 0:
            raise ConfigError("backoff_s must be >= 0")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RetryPolicy:
        env = os.environ if environ is None else environ
        kwargs: dict[str, float | int] = {}
        raw_count = env.get(RETRY_COUNT_ENV)
        if raw_count:
            try:
                kwargs["max_retries"] = int(raw_count)
            except ValueError as exc:
                raise ConfigError(f"{RETRY_COUNT_ENV} must be an integer") from exc
        raw_backoff = env.get(BACKOFF_ENV)
        if raw_backoff:
            try:
                kwargs["backoff_s"] = float(raw_backoff)
            except ValueError as exc:
                raise ConfigError(f"{BACKOFF_ENV} must be numeric") from exc
        return cls(**kwargs)  # type: ignore[arg-type]

    def delay_for(self, attempt: int) -> float:
        """``attempt`` 回目の失敗後に待つ秒数 (1 始まり)。"""
        return self.backoff_s * (2 ** max(0, attempt - 1))


async def with_timeout(
    awaitable: Awaitable[T], timeout_s: float | None, *, label: str = "provider"
) -> T:
    """1 回の生成呼び出しに締め切りを設け、超過時は TimeoutError に変換する。"""
    if timeout_s is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout_s)
    except asyncio.TimeoutError as exc:
        raise TimeoutError(
            f"{label} exceeded the configured timeout of {timeout_s:g}s"
        ) from exc


async def call_with_retry(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    cancellation: CancellationToken,
    *,
    label: str = "provider",
    retry_if: Callable[[BaseException], bool] = is_retryable,
) -> T:
    attempt = 0
    while True:
        cancellation.raise_if_cancelled()
        try:
            return await call()
        except Exception as exc:  # noqa: BLE001
            attempt += 1
            if cancellation.cancelled or attempt > policy.max_retries or not retry_if(exc):
                raise
            delay = policy.delay_for(attempt)
            LOGGER.warning(
                "%s call failed (%s); retrying in %.2fs (%d/%d)",
                label,
                exc,
                delay,
                attempt,
                policy.max_retries,
            )
            await cancellation.sleep(delay)
