"""共通プロバイダ基底クラス。"""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable, Iterator
from typing import TypeVar

from ..cancellation import CancellationToken
from ..provider_spi import ProviderRequest, ProviderResponse, Step

T = TypeVar("T")

__all__ = ["BaseProvider", "SyncStream", "iterate_in_thread"]

_EXHAUSTED = object()


class SyncStream(Iterator[T]):
    """同期ストリーム。close() で下位の接続を解放する。"""

    def __init__(self, chunks: Iterator[T], *, on_close: Callable[[], None] | None = None) -> None:
        self._chunks = chunks
        self._on_close = on_close
        self._closed = False

    def __iter__(self) -> SyncStream[T]:
        return self

    def __next__(self) -> T:
        if self._closed:
            raise StopIteration
        return next(self._chunks)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            self._on_close()


async def _await(awaitable: Awaitable[T], cancellation: CancellationToken | None) -> T:
    if cancellation is None:
        return await awaitable
    return await cancellation.guard(awaitable)


async def iterate_in_thread(
    factory: Callable[[], SyncStream[T]],
    cancellation: CancellationToken | None = None,
) -> AsyncGenerator[T, None]:
    """ブロッキングなストリームをワーカースレッドで 1 要素ずつ取り出す。"""
    stream = await _await(asyncio.to_thread(factory), cancellation)
    try:
        while True:
            item = await _await(asyncio.to_thread(next, stream, _EXHAUSTED), cancellation)
            if item is _EXHAUSTED:
                return
            yield item  # type: ignore[misc]
    finally:
        stream.close()


class BaseProvider(ABC):
    """同期 SDK / HTTP 呼び出しを非同期クライアント契約へ橋渡しする。"""

    _name: str

    def __init__(self, *, name: str) -> None:
        name_text = name.strip()
        if not name_text:
            raise ValueError("provider name must be a non-empty string")
        self._name = name_text

    def name(self) -> str:
        return self._name

    def capabilities(self) -> set[str]:
        return {"chat", "stream"}

    @abstractmethod
    def invoke(self, request: ProviderRequest) -> ProviderResponse:
        """Run one blocking, non-streaming generation."""

    @abstractmethod
    def stream(self, request: ProviderRequest) -> SyncStream[str]:
        """Open a blocking text stream."""

    def step_stream(self, request: ProviderRequest) -> SyncStream[Step]:
        raise NotImplementedError(f"{self._name} does not expose token log-probabilities")

    async def generate_once(
        self, request: ProviderRequest, cancellation: CancellationToken | None = None
    ) -> ProviderResponse:
        return await _await(asyncio.to_thread(self.invoke, request), cancellation)

    async def generate_stream(
        self, request: ProviderRequest, cancellation: CancellationToken | None = None
    ) -> AsyncIterator[str]:
        chunks = iterate_in_thread(lambda: self.stream(request), cancellation)
        try:
            async for chunk in chunks:
                if chunk:
                    yield chunk
        finally:
            await chunks.aclose()

    async def stream_steps(
        self, request: ProviderRequest, cancellation: CancellationToken | None = None
    ) -> AsyncIterator[Step]:
        steps = iterate_in_thread(lambda: self.step_stream(request), cancellation)
        try:
            async for step in steps:
                yield step
        finally:
            await steps.aclose()
