"""Expert dispatch with provider-specific scheduling and failure isolation."""
from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
import logging
from typing import Any

from .cancellation import CancellationToken
from .confidence import (
    ConfidenceMetric,
    DeepConfEngine,
    DeepConfOptions,
    JudgedTraceProvider,
    JudgeScorer,
    LogprobScorer,
    TraceScorer,
    select_trace_source,
)
from .errors import (
    AuthError,
    CancellationError,
    RateLimitError,
    TimeoutError,
)
from .executors import build_agent_request, build_judge
from .models import (
    AgentConfig,
    AgentStatus,
    Draft,
    ExpertDispatch,
    GenerationStrategy,
    ProviderTag,
    SamplingSettings,
)
from .observability import EventLogger
from .provider_spi import ImageInput, LLMClient, ProviderRequest
from .providers import ProviderClients
from .rate_limiter import RateLimiter, resolve_rate_limiter
from .retry import RetryPolicy, call_with_retry, is_retryable, with_timeout

LOGGER = logging.getLogger(__name__)

DraftCallback = Callable[[Draft], None]

OPENAI_REQUEST_DELAY_S = 0.25
MIN_WARMUP_TRACES = 3
MAX_WARMUP_TRACES = 8

__all__ = [
    "ProviderPolicy",
    "DEFAULT_POLICIES",
    "Dispatcher",
    "deepconf_options",
    "describe_error",
]


@dataclass(frozen=True, slots=True)
class ProviderPolicy:
    """プロバイダごとのスケジューリング方針。"""

    sequential: bool = False
    delay_s: float = 0.0
    rpm: int | None = None


DEFAULT_POLICIES: Mapping[ProviderTag, ProviderPolicy] = {
    ProviderTag.GEMINI: ProviderPolicy(),
    ProviderTag.OPENROUTER: ProviderPolicy(),
    ProviderTag.OPENAI: ProviderPolicy(
        sequential=True, delay_s=OPENAI_REQUEST_DELAY_S, rpm=120
    ),
}


def deepconf_options(settings: SamplingSettings) -> DeepConfOptions:
    return DeepConfOptions(
        group_window=settings.group_window,
        eta_percent=settings.eta_percent,
        tau=settings.tau,
        max_budget=settings.trace_count,
        warmup_traces=min(MAX_WARMUP_TRACES, max(MIN_WARMUP_TRACES, settings.trace_count // 2)),
    )


def describe_error(exc: BaseException, provider: ProviderTag) -> str:
    if isinstance(exc, RateLimitError):
        return f"{provider.label} API quota exceeded."
    if isinstance(exc, AuthError):
        return f"{provider.label} API key is missing or invalid."
    return str(exc) or type(exc).__name__


class Dispatcher:
    def __init__(
        self,
        clients: ProviderClients,
        *,
        retry: RetryPolicy | None = None,
        policies: Mapping[ProviderTag, ProviderPolicy] | None = None,
        event_logger: EventLogger | None = None,
    ) -> None:
        self._clients = clients
        self._retry = retry or RetryPolicy()
        self._policies = dict(DEFAULT_POLICIES if policies is None else policies)
        self._event_logger = event_logger
        self._limiters: dict[ProviderTag, RateLimiter | None] = {}

    def _policy(self, provider: ProviderTag) -> ProviderPolicy:
        return self._policies.get(provider, ProviderPolicy())

    def _limiter(self, provider: ProviderTag) -> RateLimiter | None:
        if provider not in self._limiters:
            self._limiters[provider] = resolve_rate_limiter(self._policy(provider).rpm)
        return self._limiters[provider]

    def _emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        if self._event_logger is not None:
            self._event_logger.emit(event_type, record)

    async def dispatch(
        self,
        experts: Sequence[ExpertDispatch],
        prompt: str,
        images: Sequence[ImageInput],
        configs: Sequence[AgentConfig],
        on_draft_complete: DraftCallback | None = None,
        cancellation: CancellationToken | None = None,
    ) -> list[Draft]:
        """エージェントごとに 1 件の終端 Draft を設定順で返す。"""
        if len(experts) != len(configs):
            raise ValueError("experts and configs must have the same length")
        token = cancellation or CancellationToken()
        token.raise_if_cancelled()
        slots: list[Draft | None] = [None] * len(experts)

        async def _run(index: int) -> None:
            config = configs[index]
            config.status = AgentStatus.RUNNING
            draft = await self._run_agent(index, experts[index], config, prompt, images, token)
            slots[index] = draft
            config.status = draft.status
            self._notify(draft, on_draft_complete)

        async def _run_in_order(indices: Sequence[int], policy: ProviderPolicy) -> None:
            for position, index in enumerate(indices):
                token.raise_if_cancelled()
                await _run(index)
                is_last = position == len(indices) - 1
                if policy.delay_s > 0 and not is_last and not configs[index].settings.multi_trace:
                    await token.sleep(policy.delay_s)

        burst: list[int] = []
        ordered: dict[ProviderTag, list[int]] = {}
        for index, config in enumerate(configs):
            if self._policy(config.provider).sequential:
                ordered.setdefault(config.provider, []).append(index)
                config.status = AgentStatus.QUEUED
            else:
                burst.append(index)

        tasks = [asyncio.ensure_future(_run(index)) for index in burst]
        tasks.extend(
            asyncio.ensure_future(_run_in_order(indices, self._policy(provider)))
            for provider, indices in ordered.items()
        )
        try:
            await token.guard(asyncio.gather(*tasks))
        except CancellationError as exc:
            settled = [draft for draft in slots if draft is not None]
            self._emit(
                "dispatch_cancelled",
                {"settled": len(settled), "total": len(slots), "reason": exc.reason},
            )
            raise CancellationError(exc.reason, drafts=settled) from exc
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        return [draft for draft in slots if draft is not None]

    def _notify(self, draft: Draft, callback: DraftCallback | None) -> None:
        self._emit(
            "draft_completed",
            {
                "agent_id": draft.agent_id,
                "provider": draft.expert.provider.value,
                "model": draft.expert.model,
                "status": draft.status.value,
                "is_partial": draft.is_partial,
                "error": draft.error,
            },
        )
        if callback is None:
            return
        try:
            callback(draft)
        except Exception:  # noqa: BLE001
            LOGGER.exception("on_draft_complete callback failed for %s", draft.agent_id)

    async def _run_agent(
        self,
        index: int,
        expert: ExpertDispatch,
        config: AgentConfig,
        prompt: str,
        images: Sequence[ImageInput],
        cancellation: CancellationToken,
    ) -> Draft:
        label = f'Expert "{expert.name}"'
        try:
            client = self._clients.for_provider(config.provider)
            request = build_agent_request(config, index, prompt, images)
            if config.settings.multi_trace:
                content = await self._run_multi_trace(
                    expert, config, client, request, cancellation, label
                )
                if not content.strip():
                    return Draft.failed(
                        expert, f"{config.provider.label} returned an empty response."
                    )
                return Draft(
                    agent_id=expert.agent_id,
                    expert=expert,
                    content=content,
                    status=AgentStatus.COMPLETED,
                )
            return await self._run_single(expert, config, client, request, cancellation, label)
        except CancellationError:
            raise
        except Exception as exc:  # noqa: BLE001
            message = describe_error(exc, config.provider)
            LOGGER.warning(
                "agent %s (%s - %s) failed: %s",
                expert.agent_id,
                config.provider.value,
                expert.name,
                message,
            )
            return Draft.failed(expert, message)

    async def _run_single(
        self,
        expert: ExpertDispatch,
        config: AgentConfig,
        client: LLMClient,
        request: ProviderRequest,
        cancellation: CancellationToken,
        label: str,
    ) -> Draft:
        fragments: list[str] = []

        async def _consume() -> None:
            fragments.clear()
            stream = client.generate_stream(request, cancellation)
            try:
                async for chunk in stream:
                    fragments.append(chunk)
            finally:
                await stream.aclose()

        async def _attempt() -> None:
            await with_timeout(_consume(), config.settings.timeout_s, label=label)

        try:
            await call_with_retry(
                _attempt,
                self._retry,
                cancellation,
                label=label,
                retry_if=lambda exc: not fragments and is_retryable(exc),
            )
        except (CancellationError, TimeoutError):
            raise
        except Exception as exc:  # noqa: BLE001
            if not fragments:
                raise
            message = describe_error(exc, config.provider)
            LOGGER.warning("agent %s stream interrupted: %s", expert.agent_id, message)
            return Draft(
                agent_id=expert.agent_id,
                expert=expert,
                content="".join(fragments),
                status=AgentStatus.COMPLETED,
                error=message,
                is_partial=True,
            )

        content = "".join(fragments)
        if not content.strip():
            return Draft.failed(expert, f"{config.provider.label} returned an empty response.")
        return Draft(
            agent_id=expert.agent_id,
            expert=expert,
            content=content,
            status=AgentStatus.COMPLETED,
        )

    async def _run_multi_trace(
        self,
        expert: ExpertDispatch,
        config: AgentConfig,
        client: LLMClient,
        request: ProviderRequest,
        cancellation: CancellationToken,
        label: str,
    ) -> str:
        settings = config.settings
        limiter = self._limiter(config.provider)

        async def _text_call(prompt: str, token: CancellationToken) -> str:
            trace_request = replace(request, prompt=prompt)

            async def _once() -> str:
                if limiter is not None:
                    await limiter.acquire(token)
                response = await with_timeout(
                    client.generate_once(trace_request, token), settings.timeout_s, label=label
                )
                return response.text

            return await call_with_retry(_once, self._retry, token, label=label)

        source = select_trace_source(
            client,
            request,
            settings.confidence_source,
            text_call=_text_call,
            timeout_s=settings.timeout_s,
            retry=self._retry,
            label=label,
        )
        options = deepconf_options(settings)
        online = settings.generation_strategy is GenerationStrategy.DEEPCONF_ONLINE
        scorer: TraceScorer
        if isinstance(source, JudgedTraceProvider):
            scorer = JudgeScorer(build_judge(config, self._clients))
        else:
            scorer = LogprobScorer(
                options, ConfidenceMetric.LOWEST_GROUP if online else options.metric
            )
        engine = DeepConfEngine(source, scorer, options)
        if online:
            result = await engine.run_online(request.prompt, cancellation)
        else:
            result = await engine.run_offline(request.prompt, cancellation)
        self._emit(
            "deepconf_completed",
            {
                "agent_id": expert.agent_id,
                "strategy": settings.generation_strategy.value,
                "scoring": "judge" if isinstance(source, JudgedTraceProvider) else "logprobs",
                "traces": result.traces_used,
                "early_stops": result.early_stops,
                "consensus": result.consensus,
            },
        )
        return result.content
