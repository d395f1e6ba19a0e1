from __future__ import annotations

import asyncio

import pytest

from llm_moe.arbiter import Arbiter
from llm_moe.dispatcher import Dispatcher
from llm_moe.errors import AllFailedError, AuthError
from llm_moe.models import ArbiterConfig, ExpertDispatch, RunRequest
from llm_moe.orchestrator import (
    ARBITER_TOKEN_THRESHOLD,
    OrchestrationCallbacks,
    Orchestrator,
)
from llm_moe.providers import ProviderClients
from llm_moe.retry import RetryPolicy
from tests.helpers.configs import gemini_agent
from tests.helpers.fakes import CapturingLogger, Reply, ScriptedClient


class _FixedEstimator:
    exact = True

    def __init__(self, tokens: int) -> None:
        self.tokens = tokens
        self.seen: list[str] = []

    def count(self, text: str) -> int:
        self.seen.append(text)
        return self.tokens


def _orchestrator(
    clients: ProviderClients, tokens: int, logger: CapturingLogger | None = None
) -> Orchestrator:
    dispatcher = Dispatcher(clients, retry=RetryPolicy(max_retries=0), event_logger=logger)
    return Orchestrator(
        dispatcher,
        Arbiter(clients),
        token_estimator=_FixedEstimator(tokens),
        event_logger=logger,
    )


def _request(arbiter_model: str) -> RunRequest:
    return RunRequest(
        prompt="Explain DNS.",
        agents=[gemini_agent("g1"), gemini_agent("g2", name="Critic")],
        arbiter=ArbiterConfig(model=arbiter_model),
    )


async def _drain(result) -> str:
    return "".join([chunk async for chunk in result.stream])


def test_large_prompt_switches_small_context_arbiter() -> None:
    gemini = ScriptedClient(Reply(chunks=("draft",)))
    openai = ScriptedClient(Reply(chunks=("final",)))
    logger = CapturingLogger()
    switched: list[tuple[str, str, int]] = []
    callbacks = OrchestrationCallbacks(
        on_arbiter_switched=lambda *args: switched.append(args)
    )
    orchestrator = _orchestrator(
        ProviderClients(gemini=gemini, openai=openai), ARBITER_TOKEN_THRESHOLD + 1, logger
    )

    async def _run():
        result = await orchestrator.run(_request("gpt-5"), callbacks)
        return result, await _drain(result)

    result, text = asyncio.run(_run())

    assert result.switched_arbiter is True
    assert result.arbiter_model == "gpt-4.1"
    assert text == "final"
    assert openai.calls[0].model == "gpt-4.1"
    assert switched == [("gpt-5", "gpt-4.1", ARBITER_TOKEN_THRESHOLD + 1)]
    assert logger.of_type("arbiter_switched")[0]["replacement"] == "gpt-4.1"
    assert logger.of_type("arbiter_started")[0]["model"] == "gpt-4.1"


def test_prompt_at_threshold_keeps_arbiter() -> None:
    clients = ProviderClients(gemini=ScriptedClient(), openai=ScriptedClient())
    orchestrator = _orchestrator(clients, ARBITER_TOKEN_THRESHOLD)

    result = asyncio.run(orchestrator.run(_request("gpt-5")))

    assert result.switched_arbiter is False
    assert result.arbiter_model == "gpt-5"


def test_large_context_family_is_never_switched() -> None:
    gemini = ScriptedClient()
    orchestrator = _orchestrator(ProviderClients(gemini=gemini), 10 * ARBITER_TOKEN_THRESHOLD)

    result = asyncio.run(orchestrator.run(_request("gemini-2.5-pro")))

    assert result.switched_arbiter is False
    assert result.arbiter_model == "gemini-2.5-pro"


def test_initial_agents_reported_before_generation() -> None:
    gemini = ScriptedClient()
    seen: list[tuple[list[str], int]] = []

    def _initial(experts: list[ExpertDispatch]) -> None:
        seen.append(([expert.agent_id for expert in experts], len(gemini.calls)))

    orchestrator = _orchestrator(ProviderClients(gemini=gemini), 100)
    asyncio.run(
        orchestrator.run(_request("gemini-2.5-pro"), OrchestrationCallbacks(on_initial_agents=_initial))
    )

    assert seen == [(["g1", "g2"], 0)]


def test_all_failed_raises_before_arbiter() -> None:
    gemini = ScriptedClient(Reply(error=AuthError("nope")))
    estimator = _FixedEstimator(1)
    dispatcher = Dispatcher(ProviderClients(gemini=gemini), retry=RetryPolicy(max_retries=0))
    orchestrator = Orchestrator(
        dispatcher, Arbiter(ProviderClients(gemini=gemini)), token_estimator=estimator
    )

    with pytest.raises(AllFailedError) as excinfo:
        asyncio.run(orchestrator.run(_request("gemini-2.5-pro")))

    assert len(gemini.calls) == 2
    assert estimator.seen == []
    assert excinfo.value.failures == [
        "g1: Gemini API key is missing or invalid.",
        "g2: Gemini API key is missing or invalid.",
    ]


def test_synthesis_prompt_is_what_gets_estimated() -> None:
    estimator = _FixedEstimator(5)
    gemini = ScriptedClient(Reply(chunks=("draft text",)))
    clients = ProviderClients(gemini=gemini)
    orchestrator = Orchestrator(
        Dispatcher(clients, retry=RetryPolicy(max_retries=0)),
        Arbiter(clients),
        token_estimator=estimator,
    )

    asyncio.run(orchestrator.run(_request("gemini-2.5-pro")))

    assert "draft text" in estimator.seen[0]
    assert '"Explain DNS."' in estimator.seen[0]
