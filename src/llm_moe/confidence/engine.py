"""DeepConf スタイルのオフライン / オンライン サンプリング。"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
import logging
import math
from typing import Protocol, TypeVar

from ..cancellation import CancellationToken
from ..errors import ConfigError
from ..provider_spi import Step
from .judge import Judge
from .primitives import (
    ConfidenceMetric,
    group_confidence,
    lowest_group_confidence,
    token_confidence,
    trace_confidence,
)
from .traces import Trace, TraceProvider
from .voting import VoteResult, filter_top_eta, weighted_vote

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)

NO_WINNING_TRACE = "Could not determine winning trace."

__all__ = [
    "DeepConfOptions",
    "DeepConfResult",
    "TraceScorer",
    "LogprobScorer",
    "JudgeScorer",
    "DeepConfEngine",
    "extract_answer",
    "stopping_threshold",
    "NO_WINNING_TRACE",
]


def extract_answer(trace: Trace) -> str:
    return trace.text.strip()


@dataclass(frozen=True, slots=True)
class DeepConfOptions:
    k_top: int = 5
    group_window: int = 2048
    tail_window: int = 2048
    eta_percent: int = 90
    tau: float = 0.95
    warmup_traces: int = 8
    max_budget: int = 16
    min_tokens_before_stop: int = 32
    metric: ConfidenceMetric = ConfidenceMetric.LOWEST_GROUP

    def __post_init__(self) -> None:
        if self.k_top < 1:
            raise ConfigError("k_top must be >= 1")
        if self.group_window < 1 or self.tail_window < 1:
            raise ConfigError("confidence windows must be >= 1")
        if not 0 < self.eta_percent <= 100:
            raise ConfigError("eta_percent must be in (0, 100]")
        if not 0.0 < self.tau <= 1.0:
            raise ConfigError("tau must be in (0, 1]")
        if self.warmup_traces < 1 or self.max_budget < 1:
            raise ConfigError("warmup_traces and max_budget must be >= 1")
        if self.min_tokens_before_stop < 0:
            raise ConfigError("min_tokens_before_stop must be >= 0")

    @property
    def warmup_size(self) -> int:
        return min(self.warmup_traces, self.max_budget)


@dataclass(frozen=True, slots=True)
class DeepConfResult:
    answer: str
    content: str
    consensus: float
    traces_used: int
    early_stops: int = 0


class TraceScorer(Protocol):
    async def score(
        self, prompt: str, trace: Trace, cancellation: CancellationToken
    ) -> float: ...


class LogprobScorer:
    def __init__(
        self, options: DeepConfOptions, metric: ConfidenceMetric | None = None
    ) -> None:
        self._options = options
        self._metric = metric or options.metric

    def confidences(self, steps: Sequence[Step]) -> list[float]:
        return [token_confidence(step.top_k, self._options.k_top) for step in steps]

    async def score(
        self, prompt: str, trace: Trace, cancellation: CancellationToken
    ) -> float:
        return trace_confidence(
            self.confidences(trace.steps),
            self._metric,
            group_window=self._options.group_window,
            tail_window=self._options.tail_window,
        )


class JudgeScorer:
    def __init__(self, judge: Judge) -> None:
        self._judge = judge

    async def score(
        self, prompt: str, trace: Trace, cancellation: CancellationToken
    ) -> float:
        result = await self._judge.score(prompt, trace.text, cancellation)
        return result.score


class _EarlyStopMonitor:
    """実行中の group confidence が閾値を下回ったら生成を打ち切る。"""

    def __init__(self, threshold: float, options: DeepConfOptions) -> None:
        self._threshold = threshold
        self._options = options
        self._conf: list[float] = []

    def observe(self, step: Step) -> bool:
        self._conf.append(token_confidence(step.top_k, self._options.k_top))
        if len(self._conf) < self._options.min_tokens_before_stop:
            return False
        current = group_confidence(
            self._conf, len(self._conf) - 1, self._options.group_window
        )
        return current < self._threshold


def stopping_threshold(
    warmup: Sequence[Trace], options: DeepConfOptions
) -> float | None:
    """warmup の lowest-group スコアの (100-eta) パーセンタイル。分布が無ければ None。"""
    scores = sorted(
        lowest_group_confidence(
            [token_confidence(step.top_k, options.k_top) for step in trace.steps],
            options.group_window,
        )
        for trace in warmup
    )
    if not scores:
        return None
    index = math.floor((100 - options.eta_percent) / 100 * len(scores))
    threshold = scores[min(len(scores) - 1, max(0, index))]
    if math.isinf(threshold):
        return None
    return threshold


async def _gather_all(factories: Sequence[Callable[[], Awaitable[T]]]) -> list[T]:
    tasks = [asyncio.ensure_future(factory()) for factory in factories]
    try:
        return list(await asyncio.gather(*tasks))
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class DeepConfEngine:
    """TraceProvider と採点器を注入して動く、プロバイダ非依存のサンプリング器。"""

    def __init__(
        self,
        provider: TraceProvider,
        scorer: TraceScorer,
        options: DeepConfOptions | None = None,
        *,
        answer_of: Callable[[Trace], str] = extract_answer,
    ) -> None:
        self._provider = provider
        self._scorer = scorer
        self._options = options or DeepConfOptions()
        self._answer_of = answer_of

    @property
    def options(self) -> DeepConfOptions:
        return self._options

    async def _generate_batch(
        self, prompt: str, count: int, cancellation: CancellationToken
    ) -> list[Trace]:
        return await _gather_all(
            [lambda: self._provider.generate(prompt, cancellation) for _ in range(count)]
        )

    async def _score_batch(
        self, prompt: str, traces: Sequence[Trace], cancellation: CancellationToken
    ) -> list[float]:
        def _factory(trace: Trace) -> Callable[[], Awaitable[float]]:
            return lambda: self._scorer.score(prompt, trace, cancellation)

        return await _gather_all([_factory(trace) for trace in traces])

    def _vote(self, traces: Sequence[Trace], scores: Sequence[float]) -> VoteResult:
        answers = [self._answer_of(trace) for trace in traces]
        kept, kept_scores = filter_top_eta(answers, scores, self._options.eta_percent)
        return weighted_vote(kept, kept_scores)

    def _result(
        self, vote: VoteResult, traces: Sequence[Trace], early_stops: int = 0
    ) -> DeepConfResult:
        content = next(
            (trace.text for trace in traces if self._answer_of(trace) == vote.answer),
            NO_WINNING_TRACE,
        )
        return DeepConfResult(
            answer=vote.answer,
            content=content,
            consensus=vote.consensus,
            traces_used=len(traces),
            early_stops=early_stops,
        )

    async def run_offline(
        self, prompt: str, cancellation: CancellationToken
    ) -> DeepConfResult:
        cancellation.raise_if_cancelled()
        traces = await self._generate_batch(prompt, self._options.max_budget, cancellation)
        scores = await self._score_batch(prompt, traces, cancellation)
        vote = self._vote(traces, scores)
        LOGGER.debug(
            "deepconf offline: %d traces, consensus=%.3f", len(traces), vote.consensus
        )
        return self._result(vote, traces)

    async def run_online(
        self, prompt: str, cancellation: CancellationToken
    ) -> DeepConfResult:
        options = self._options
        cancellation.raise_if_cancelled()
        traces = await self._generate_batch(prompt, options.warmup_size, cancellation)
        scores = await self._score_batch(prompt, traces, cancellation)
        threshold = (
            stopping_threshold(traces, options)
            if self._provider.supports_early_stop
            else None
        )
        vote = self._vote(traces, scores)
        early_stops = 0

        while vote.consensus < options.tau and len(traces) < options.max_budget:
            cancellation.raise_if_cancelled()
            monitor = (
                _EarlyStopMonitor(threshold, options) if threshold is not None else None
            )
            trace = await self._provider.generate(
                prompt, cancellation, monitor, keep_partial=True
            )
            if trace.stopped_early:
                early_stops += 1
            traces.append(trace)
            scores.append(await self._scorer.score(prompt, trace, cancellation))
            vote = self._vote(traces, scores)

        LOGGER.debug(
            "deepconf online: %d traces (%d early stops), consensus=%.3f",
            len(traces),
            early_stops,
            vote.consensus,
        )
        return self._result(vote, traces, early_stops)
