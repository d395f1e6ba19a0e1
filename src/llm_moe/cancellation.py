"""Run-scoped cancellation token shared by every in-flight call."""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from .errors import CancellationError

T = TypeVar("T")

__all__ = ["CancellationToken"]


class CancellationToken:
    """One token per orchestration run; once fired it stays fired."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = "cancelled"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self._reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """``awaitable`` とトークン発火を競わせ、発火が先なら CancellationError を送出する。"""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        finished = False
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
            finished = task in done
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if not finished:
            raise CancellationError(self._reason)
        return task.result()

    async def sleep(self, delay: float) -> None:
        if delay <= 0:
            self.raise_if_cancelled()
            return
        await self.guard(asyncio.sleep(delay))
