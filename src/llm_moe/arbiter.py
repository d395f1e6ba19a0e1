"""最終回答を合成するアービター。"""
from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
import logging
from typing import Any

from .cancellation import CancellationToken
from .errors import AllFailedError
from .executors import gemini_thinking_budget
from .models import AgentStatus, Draft, Effort, ProviderTag, Verbosity
from .provider_spi import LLMClient, ProviderRequest
from .providers import ProviderClients, is_reasoning_model, provider_for_model

LOGGER = logging.getLogger(__name__)

ARBITER_PERSONA = """You are a world-class arbiter and editor. Your task is to synthesize multiple expert drafts into a single, coherent, and comprehensive answer that is superior to any individual draft.

Instructions:
1.  Read the original user question carefully.
2.  Review all the provided candidate answers.
3.  Identify the strengths, weaknesses, and unique insights from each draft.
4.  Synthesize the best elements from all drafts into a single, well-structured, and easy-to-read response.
5.  Do NOT simply list the drafts. Create a new, unified answer.
6.  If drafts contradict, use your judgment to determine the most likely correct information or acknowledge the controversy.
7.  Ensure your final answer directly and thoroughly addresses the original user's question.
8.  Do not include headings like "Final Answer" or "Synthesized Response". Begin the response directly."""

ARBITER_HIGH_REASONING_MODIFIER = """
Your reasoning and synthesis abilities are paramount. Before writing the final answer, explicitly outline the key points from each draft, identify convergences and divergences, and then construct a synthesis that resolves contradictions and builds upon the strongest arguments. Your final output should only be the synthesized answer itself."""

ALL_FAILED_MESSAGE = "All agents failed to produce a draft. Cannot generate a final answer."

_DRAFT_SEPARATOR = "\n\n---\n\n"

# OpenAI の reasoning.effort へ写す
_OPENAI_EFFORT = {
    Effort.HIGH: "high",
    Effort.MEDIUM: "medium",
    Effort.LOW: "low",
    Effort.NONE: "minimal",
    Effort.DYNAMIC: "medium",
}

__all__ = [
    "ARBITER_PERSONA",
    "ARBITER_HIGH_REASONING_MODIFIER",
    "ALL_FAILED_MESSAGE",
    "Arbiter",
    "build_synthesis_prompt",
    "completed_drafts",
    "verbosity_instruction",
]


def completed_drafts(drafts: Sequence[Draft]) -> list[Draft]:
    return [draft for draft in drafts if draft.status is AgentStatus.COMPLETED]


def verbosity_instruction(verbosity: Verbosity) -> str:
    return f"\nYour final synthesized response should have a verbosity level of: {verbosity.value}."


def build_synthesis_prompt(prompt: str, drafts: Sequence[Draft]) -> str:
    """完了済みドラフトだけを番号付きで並べた合成用プロンプト。"""
    usable = completed_drafts(drafts)
    sections = _DRAFT_SEPARATOR.join(
        f"### Draft from Agent {index} "
        f"(Provider: {draft.expert.provider.value}, Persona: {draft.expert.name})\n"
        f"{draft.content}"
        for index, draft in enumerate(usable, start=1)
    )
    return (
        f'The original user question is:\n"{prompt}"\n\n'
        f"Here are {len(usable)} candidate answers from different expert agents. "
        "Please synthesize them into the best possible single answer.\n\n"
        f"{sections}"
    )


class Arbiter:
    def __init__(self, clients: ProviderClients) -> None:
        self._clients = clients

    def build_request(
        self,
        model: str,
        synthesis_prompt: str,
        verbosity: Verbosity,
        effort: Effort,
    ) -> tuple[ProviderTag, ProviderRequest]:
        provider = provider_for_model(model)
        options: dict[str, Any] = {}
        match provider:
            case ProviderTag.GEMINI:
                system_prompt = ARBITER_PERSONA + verbosity_instruction(verbosity)
                options["thinking_budget"] = gemini_thinking_budget(
                    effort, model, allow_disable=False
                )
            case ProviderTag.OPENAI if is_reasoning_model(model):
                system_prompt = ARBITER_PERSONA
                if effort is Effort.HIGH:
                    system_prompt += ARBITER_HIGH_REASONING_MODIFIER
                options["reasoning"] = {"effort": _OPENAI_EFFORT[effort]}
                options["text"] = {"verbosity": verbosity.value}
            case ProviderTag.OPENAI:
                # gpt-4.1 などは reasoning / text オプションを受け付けない
                system_prompt = ARBITER_PERSONA
                if effort is Effort.HIGH:
                    system_prompt += ARBITER_HIGH_REASONING_MODIFIER
                system_prompt += verbosity_instruction(verbosity)
            case _:
                system_prompt = ARBITER_PERSONA + verbosity_instruction(verbosity)
        request = ProviderRequest(
            model=model,
            prompt=synthesis_prompt,
            system_prompt=system_prompt,
            options=options,
        )
        return provider, request

    async def arbitrate(
        self,
        model: str,
        prompt: str,
        drafts: Sequence[Draft],
        verbosity: Verbosity = Verbosity.MEDIUM,
        effort: Effort = Effort.DYNAMIC,
        cancellation: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        """合成ストリームを返す。完了済みドラフトが無ければストリームを作る前に失敗する。"""
        usable = completed_drafts(drafts)
        if not usable:
            raise AllFailedError(ALL_FAILED_MESSAGE)
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        provider, request = self.build_request(
            model, build_synthesis_prompt(prompt, usable), verbosity, effort
        )
        client = self._clients.for_provider(provider)
        LOGGER.info(
            "arbiter %s (%s) synthesizing %d drafts", model, provider.value, len(usable)
        )
        return _stream(client, request, cancellation)


async def _stream(
    client: LLMClient, request: ProviderRequest, cancellation: CancellationToken | None
) -> AsyncIterator[str]:
    stream = client.generate_stream(request, cancellation)
    try:
        async for chunk in stream:
            if chunk:
                yield chunk
    finally:
        await stream.aclose()
