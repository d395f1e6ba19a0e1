"""Trace generation adapters used by the confidence engine."""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
import logging
from typing import Protocol

from ..cancellation import CancellationToken
from ..errors import CancellationError
from ..models import ConfidenceSource
from ..provider_spi import LLMClient, LogprobClient, ProviderRequest, Step
from ..retry import RetryPolicy, call_with_retry, is_retryable, with_timeout

LOGGER = logging.getLogger(__name__)

TextCall = Callable[[str, CancellationToken], Awaitable[str]]

__all__ = [
    "Trace",
    "StepMonitor",
    "TraceProvider",
    "StreamingTraceProvider",
    "JudgedTraceProvider",
    "select_trace_source",
]


@dataclass(frozen=True, slots=True)
class Trace:
    text: str
    steps: tuple[Step, ...] = ()
    stopped_early: bool = False


class StepMonitor(Protocol):
    def observe(self, step: Step) -> bool:
        """Return ``True`` to stop the generation after ``step``."""


class TraceProvider(Protocol):
    @property
    def supports_early_stop(self) -> bool: ...

    async def generate(
        self,
        prompt: str,
        cancellation: CancellationToken,
        monitor: StepMonitor | None = None,
        *,
        keep_partial: bool = False,
    ) -> Trace: ...


class StreamingTraceProvider:
    """log-prob 付きステップを逐次受け取り、モニタの判断で打ち切る。

    ``keep_partial`` を指定すると、1 ステップ以上受信した後のストリーム障害は
    警告ログを残して受信済みの部分トレースとして返す。
    """

    supports_early_stop = True

    def __init__(
        self,
        client: LogprobClient,
        request: ProviderRequest,
        *,
        timeout_s: float | None = None,
        retry: RetryPolicy | None = None,
        label: str = "provider",
    ) -> None:
        self._client = client
        self._request = request
        self._timeout_s = timeout_s
        self._retry = retry or RetryPolicy(max_retries=0)
        self._label = label

    async def generate(
        self,
        prompt: str,
        cancellation: CancellationToken,
        monitor: StepMonitor | None = None,
        *,
        keep_partial: bool = False,
    ) -> Trace:
        request = replace(self._request, prompt=prompt)
        steps: list[Step] = []

        async def _collect() -> Trace:
            steps.clear()
            stopped = False
            stream = self._client.stream_steps(request, cancellation)
            try:
                async for step in stream:
                    steps.append(step)
                    if monitor is not None and monitor.observe(step):
                        stopped = True
                        break
            finally:
                await stream.aclose()
            return Trace(
                text="".join(step.token for step in steps),
                steps=tuple(steps),
                stopped_early=stopped,
            )

        async def _attempt() -> Trace:
            return await with_timeout(_collect(), self._timeout_s, label=self._label)

        # 途中まで受信済みのストリームは再試行しない
        try:
            return await call_with_retry(
                _attempt,
                self._retry,
                cancellation,
                label=self._label,
                retry_if=lambda exc: not steps and is_retryable(exc),
            )
        except CancellationError:
            raise
        except Exception as exc:  # noqa: BLE001
            if not keep_partial or not steps:
                raise
            LOGGER.warning(
                "%s trace stream interrupted after %d steps: %s",
                self._label,
                len(steps),
                exc,
            )
            return Trace(text="".join(step.token for step in steps), steps=tuple(steps))


class JudgedTraceProvider:
    """全文を 1 ステップ (分布なし) のトレースとして扱う。"""

    supports_early_stop = False

    def __init__(self, call: TextCall) -> None:
        self._call = call

    async def generate(
        self,
        prompt: str,
        cancellation: CancellationToken,
        monitor: StepMonitor | None = None,
        *,
        keep_partial: bool = False,
    ) -> Trace:
        text = await self._call(prompt, cancellation)
        return Trace(text=text, steps=(Step(token=text),) if text else ())


def select_trace_source(
    client: LLMClient,
    request: ProviderRequest,
    source: ConfidenceSource,
    *,
    text_call: TextCall,
    timeout_s: float | None = None,
    retry: RetryPolicy | None = None,
    label: str = "provider",
) -> StreamingTraceProvider | JudgedTraceProvider:
    if source is ConfidenceSource.LOGPROBS:
        if "logprobs" in client.capabilities() and hasattr(client, "stream_steps"):
            return StreamingTraceProvider(
                client,  # type: ignore[arg-type]
                request,
                timeout_s=timeout_s,
                retry=retry,
                label=label,
            )
        LOGGER.warning(
            "%s does not expose token log-probabilities; falling back to judge scoring",
            client.name(),
        )
    return JudgedTraceProvider(text_call)
