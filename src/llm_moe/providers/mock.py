"""Mock provider that can deterministically trigger failure modes."""
from __future__ import annotations

from collections.abc import Iterable, Iterator
import random
import re
import time

from ..errors import AuthError, MoEError, RateLimitError, RetriableError, TimeoutError
from ..provider_spi import ProviderRequest, ProviderResponse, Step, TokenLogprob, TokenUsage
from .base import BaseProvider, SyncStream

ErrorSpec = tuple[type[MoEError], str]
_ERROR_BY_MARKER: dict[str, ErrorSpec] = {
    "[TIMEOUT]": (TimeoutError, "simulated timeout"),
    "[RATELIMIT]": (RateLimitError, "simulated rate limit"),
    "[AUTH]": (AuthError, "simulated auth failure"),
}
PARTIAL_MARKER = "[PARTIAL]"

_TOKEN_PATTERN = re.compile(r"\S+\s*")


class MockProvider(BaseProvider):
    """Very small provider implementation for dry runs and tests."""

    def __init__(
        self,
        name: str = "mock",
        base_latency_ms: int = 50,
        error_markers: Iterable[str] | None = None,
    ) -> None:
        super().__init__(name=name)
        self.base_latency_ms = base_latency_ms
        known = set(_ERROR_BY_MARKER) | {PARTIAL_MARKER}
        if error_markers is None:
            self._error_markers: set[str] = known
        else:
            self._error_markers = {marker for marker in error_markers if marker in known}

    def capabilities(self) -> set[str]:
        return {"chat", "stream", "json", "vision", "logprobs"}

    def _maybe_raise_error(self, text: str) -> None:
        for marker in sorted(self._error_markers):
            if marker in text and marker in _ERROR_BY_MARKER:
                exc_cls, message = _ERROR_BY_MARKER[marker]
                raise exc_cls(message)

    def _interrupts(self, request: ProviderRequest) -> bool:
        return PARTIAL_MARKER in self._error_markers and PARTIAL_MARKER in request.prompt

    def _simulate_latency(self) -> int:
        latency = self.base_latency_ms + int(random.random() * self.base_latency_ms * 0.4)
        time.sleep(latency / 1000.0)
        return latency

    def _reply(self, request: ProviderRequest) -> str:
        self._maybe_raise_error(f"{request.system_prompt or ''}\n{request.prompt}")
        return f"echo({self.name()}:{request.model}): {request.prompt}"

    def invoke(self, request: ProviderRequest) -> ProviderResponse:
        text = self._reply(request)
        latency = self._simulate_latency()
        return ProviderResponse(
            text=text,
            latency_ms=latency,
            token_usage=TokenUsage(prompt=max(1, len(request.prompt) // 4), completion=16),
            model=request.model,
            finish_reason="stop",
            raw={"echo": request.prompt, "provider": self.name()},
        )

    def _tokens(self, request: ProviderRequest) -> Iterator[str]:
        text = self._reply(request)
        self._simulate_latency()
        for index, match in enumerate(_TOKEN_PATTERN.finditer(text)):
            if index == 1 and self._interrupts(request):
                raise RetriableError("simulated stream interruption")
            yield match.group(0)

    def stream(self, request: ProviderRequest) -> SyncStream[str]:
        return SyncStream(self._tokens(request))

    def step_stream(self, request: ProviderRequest) -> SyncStream[Step]:
        def _steps() -> Iterator[Step]:
            for token in self._tokens(request):
                # 長いトークンほど確信度が低い決定的な分布
                best = -0.05 * len(token.strip())
                yield Step(
                    token=token,
                    top_k=(
                        TokenLogprob(token=token, logprob=best),
                        TokenLogprob(token=token.upper(), logprob=best - 2.0),
                    ),
                )

        return SyncStream(_steps())


__all__ = ["MockProvider", "PARTIAL_MARKER"]
