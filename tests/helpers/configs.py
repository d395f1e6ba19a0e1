from __future__ import annotations

from typing import Any

from llm_moe.models import (
    Expert,
    GeminiAgentConfig,
    GeminiSettings,
    OpenAIAgentConfig,
    OpenAISettings,
    OpenRouterAgentConfig,
    OpenRouterSettings,
)


def expert(name: str) -> Expert:
    return Expert(id=name.lower(), name=name, persona=f"You are {name}.")


def gemini_agent(
    agent_id: str, *, model: str = "gemini-2.5-flash", name: str = "Analyst", **settings: Any
) -> GeminiAgentConfig:
    return GeminiAgentConfig(
        id=agent_id, expert=expert(name), model=model, settings=GeminiSettings(**settings)
    )


def openai_agent(
    agent_id: str, *, model: str = "gpt-5", name: str = "Reviewer", **settings: Any
) -> OpenAIAgentConfig:
    return OpenAIAgentConfig(
        id=agent_id, expert=expert(name), model=model, settings=OpenAISettings(**settings)
    )


def openrouter_agent(
    agent_id: str,
    *,
    model: str = "meta-llama/llama-3.1-70b-instruct",
    name: str = "Generalist",
    **settings: Any,
) -> OpenRouterAgentConfig:
    return OpenRouterAgentConfig(
        id=agent_id, expert=expert(name), model=model, settings=OpenRouterSettings(**settings)
    )
