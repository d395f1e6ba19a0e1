from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass
import json
from typing import Any

import requests

from llm_moe.cancellation import CancellationToken
from llm_moe.provider_spi import ProviderRequest, ProviderResponse, Step, TokenLogprob


class CapturingLogger:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        self.events.append((event_type, dict(record)))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [payload for logged, payload in self.events if logged == event_type]


@dataclass
class Reply:
    chunks: Sequence[str] = ("ok",)
    error: Exception | None = None
    error_after: int = 0
    delay_s: float = 0.0
    steps: Sequence[Step] | None = None


def steps_for(text: str, logprob: float) -> tuple[Step, ...]:
    return tuple(
        Step(token=token, top_k=(TokenLogprob(token, logprob), TokenLogprob(token, logprob)))
        for token in text.split(" ")
    )


ReplyScript = Reply | Sequence[Reply] | Callable[[ProviderRequest], Reply]


class ScriptedClient:
    """決められた応答を返す非同期クライアント。呼び出し履歴を記録する。"""

    def __init__(
        self,
        script: ReplyScript = Reply(),
        *,
        name: str = "scripted",
        capabilities: Sequence[str] = ("chat", "stream"),
    ) -> None:
        self._script = script
        self._name = name
        self._capabilities = set(capabilities)
        self.calls: list[ProviderRequest] = []
        self.timeline: list[tuple[str, str]] = []
        self.closed_streams = 0

    def name(self) -> str:
        return self._name

    def capabilities(self) -> set[str]:
        return set(self._capabilities)

    def _next(self, request: ProviderRequest) -> Reply:
        self.calls.append(request)
        script = self._script
        if isinstance(script, Reply):
            return script
        if callable(script):
            return script(request)
        index = min(len(self.calls) - 1, len(script) - 1)
        return script[index]

    async def _delay(self, reply: Reply, cancellation: CancellationToken | None) -> None:
        if reply.delay_s <= 0:
            return
        if cancellation is None:
            await asyncio.sleep(reply.delay_s)
        else:
            await cancellation.sleep(reply.delay_s)

    async def generate_once(
        self, request: ProviderRequest, cancellation: CancellationToken | None = None
    ) -> ProviderResponse:
        reply = self._next(request)
        self.timeline.append(("start", request.model))
        await self._delay(reply, cancellation)
        self.timeline.append(("end", request.model))
        if reply.error is not None:
            raise reply.error
        return ProviderResponse(text="".join(reply.chunks), latency_ms=0, model=request.model)

    async def generate_stream(
        self, request: ProviderRequest, cancellation: CancellationToken | None = None
    ) -> AsyncIterator[str]:
        reply = self._next(request)
        self.timeline.append(("start", request.model))
        try:
            await self._delay(reply, cancellation)
            for index, chunk in enumerate(reply.chunks):
                if reply.error is not None and index == reply.error_after:
                    raise reply.error
                yield chunk
            if reply.error is not None and reply.error_after >= len(reply.chunks):
                raise reply.error
        finally:
            self.closed_streams += 1
            self.timeline.append(("end", request.model))

    async def stream_steps(
        self, request: ProviderRequest, cancellation: CancellationToken | None = None
    ) -> AsyncIterator[Step]:
        reply = self._next(request)
        await self._delay(reply, cancellation)
        steps = reply.steps
        if steps is None:
            steps = tuple(Step(token=chunk) for chunk in reply.chunks)
        try:
            for index, step in enumerate(steps):
                if reply.error is not None and index == reply.error_after:
                    raise reply.error
                yield step
            if reply.error is not None and reply.error_after >= len(steps):
                raise reply.error
        finally:
            self.closed_streams += 1


class FakeResponse:
    def __init__(
        self,
        payload: dict[str, Any] | None = None,
        *,
        status_code: int = 200,
        lines: Sequence[bytes] | None = None,
    ) -> None:
        self._payload = payload or {}
        self.status_code = status_code
        self.closed = False
        self._lines = list(lines or [])

    def json(self) -> dict[str, Any]:
        return self._payload

    def iter_lines(self) -> Any:
        yield from self._lines

    def close(self) -> None:
        self.closed = True

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}", response=self)


class FakeSession:
    def __init__(self, responder: Callable[[str, dict[str, Any], bool], FakeResponse]) -> None:
        self._responder = responder
        self.headers: dict[str, str] = {}
        self.calls: list[tuple[str, dict[str, Any], bool, float | None]] = []

    def post(
        self,
        url: str,
        *,
        json: dict[str, Any],
        stream: bool = False,
        timeout: float | None = None,
    ) -> FakeResponse:
        self.calls.append((url, json, stream, timeout))
        return self._responder(url, json, stream)


def sse(*events: dict[str, Any] | str) -> list[bytes]:
    lines = []
    for event in events:
        body = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {body}".encode())
    return lines
