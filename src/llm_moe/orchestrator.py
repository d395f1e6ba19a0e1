"""ディスパッチからアービターまでの 1 回分の実行を束ねる。"""
from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass
import logging
from typing import Any

from .arbiter import ALL_FAILED_MESSAGE, Arbiter, build_synthesis_prompt
from .cancellation import CancellationToken
from .dispatcher import Dispatcher
from .errors import AllFailedError
from .models import AgentStatus, Draft, ExpertDispatch, ProviderTag, RunRequest, to_dispatch
from .observability import EventLogger
from .providers import provider_for_model
from .tokens import TokenEstimator

LOGGER = logging.getLogger(__name__)

ARBITER_TOKEN_THRESHOLD = 120_000

# コンテキストの小さいファミリと、その代替となる大コンテキストモデル
LARGE_CONTEXT_SUBSTITUTES: Mapping[ProviderTag, str] = {
    ProviderTag.OPENAI: "gpt-4.1",
}

__all__ = [
    "ARBITER_TOKEN_THRESHOLD",
    "LARGE_CONTEXT_SUBSTITUTES",
    "OrchestrationCallbacks",
    "OrchestrationResult",
    "Orchestrator",
]


@dataclass(slots=True)
class OrchestrationCallbacks:
    on_initial_agents: Callable[[list[ExpertDispatch]], None] | None = None
    on_draft_complete: Callable[[Draft], None] | None = None
    on_arbiter_switched: Callable[[str, str, int], None] | None = None


@dataclass(slots=True)
class OrchestrationResult:
    drafts: list[Draft]
    stream: AsyncIterator[str]
    switched_arbiter: bool
    arbiter_model: str


class Orchestrator:
    def __init__(
        self,
        dispatcher: Dispatcher,
        arbiter: Arbiter,
        *,
        token_estimator: TokenEstimator | None = None,
        token_threshold: int = ARBITER_TOKEN_THRESHOLD,
        substitutes: Mapping[ProviderTag, str] | None = None,
        event_logger: EventLogger | None = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._arbiter = arbiter
        self._token_estimator = token_estimator or TokenEstimator()
        self._token_threshold = token_threshold
        self._substitutes = dict(
            LARGE_CONTEXT_SUBSTITUTES if substitutes is None else substitutes
        )
        self._event_logger = event_logger

    def _emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        if self._event_logger is not None:
            self._event_logger.emit(event_type, record)

    def select_arbiter(self, model: str, estimated_tokens: int) -> str:
        """推定トークン数が閾値を超え、かつ小コンテキスト系なら代替モデルを返す。"""
        if estimated_tokens <= self._token_threshold:
            return model
        substitute = self._substitutes.get(provider_for_model(model))
        return substitute or model

    async def run(
        self,
        request: RunRequest,
        callbacks: OrchestrationCallbacks | None = None,
        cancellation: CancellationToken | None = None,
    ) -> OrchestrationResult:
        callbacks = callbacks or OrchestrationCallbacks()
        token = cancellation or CancellationToken()
        configs = list(request.agents)
        experts = [to_dispatch(config) for config in configs]
        if callbacks.on_initial_agents is not None:
            callbacks.on_initial_agents(list(experts))

        drafts = await self._dispatcher.dispatch(
            experts,
            request.prompt,
            request.images,
            configs,
            callbacks.on_draft_complete,
            token,
        )
        if not any(draft.status is AgentStatus.COMPLETED for draft in drafts):
            raise AllFailedError(ALL_FAILED_MESSAGE, failures=_failures(drafts))

        arbiter = request.arbiter
        estimated = self._token_estimator.count(build_synthesis_prompt(request.prompt, drafts))
        model = self.select_arbiter(arbiter.model, estimated)
        switched = model != arbiter.model
        if switched:
            LOGGER.warning(
                "synthesis prompt is ~%d tokens (> %d); switching arbiter %s -> %s",
                estimated,
                self._token_threshold,
                arbiter.model,
                model,
            )
            self._emit(
                "arbiter_switched",
                {"original": arbiter.model, "replacement": model, "estimated_tokens": estimated},
            )
            if callbacks.on_arbiter_switched is not None:
                callbacks.on_arbiter_switched(arbiter.model, model, estimated)

        self._emit(
            "arbiter_started",
            {
                "model": model,
                "drafts": sum(1 for d in drafts if d.status is AgentStatus.COMPLETED),
                "estimated_tokens": estimated,
                "exact_tokens": self._token_estimator.exact,
            },
        )
        stream = await self._arbiter.arbitrate(
            model,
            request.prompt,
            drafts,
            arbiter.verbosity,
            arbiter.effort,
            cancellation=token,
        )
        return OrchestrationResult(
            drafts=drafts,
            stream=stream,
            switched_arbiter=switched,
            arbiter_model=model,
        )


def _failures(drafts: Sequence[Draft]) -> list[str]:
    return [f"{draft.agent_id}: {draft.error or 'unknown error'}" for draft in drafts]
