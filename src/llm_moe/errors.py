"""Normalized exception hierarchy for llm-moe."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any


class MoEError(Exception):
    """Base class for orchestration-originated errors."""


class RetryableError(MoEError):
    """Base class for errors where retrying may succeed."""


class FatalError(MoEError):
    """Base class for unrecoverable errors."""


class TimeoutError(RetryableError):
    """Raised when a provider call exceeds the timeout."""


class RateLimitError(RetryableError):
    """Raised when a provider signals rate limiting."""


class RetriableError(RetryableError):
    """Raised for transient provider issues."""


class AuthError(FatalError):
    """Raised when authentication fails."""


class ConfigError(FatalError):
    """Raised when run or provider configuration is invalid."""


@dataclass(slots=True, init=False)
class AllFailedError(FatalError):
    """Raised when no agent produced a usable draft."""

    message: str
    failures: list[Any]

    def __init__(self, message: str, *, failures: Iterable[Any] | None = None) -> None:
        Exception.__init__(self, message)
        self.message = message
        self.failures = list(failures) if failures is not None else []


class CancellationError(MoEError):
    """キャンセル トークンの発火で処理が打ち切られたことを表す。"""

    def __init__(self, reason: str = "cancelled", *, drafts: Iterable[Any] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.drafts = list(drafts) if drafts is not None else []


__all__ = [
    "MoEError",
    "RetryableError",
    "FatalError",
    "TimeoutError",
    "RateLimitError",
    "RetriableError",
    "AuthError",
    "ConfigError",
    "AllFailedError",
    "CancellationError",
]
