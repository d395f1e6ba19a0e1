"""プロバイダ別のリクエスト組み立てとジャッジ選択。"""
from __future__ import annotations

from collections.abc import Sequence

from .confidence import Judge, JUDGE_SYSTEM_PROMPT
from .errors import ConfigError
from .models import (
    AgentConfig,
    Effort,
    GeminiAgentConfig,
    OpenAIAgentConfig,
    OpenRouterAgentConfig,
    ProviderTag,
)
from .provider_spi import ImageInput, ProviderRequest
from .providers import ProviderClients, is_reasoning_model

GEMINI_FLASH_MODEL = "gemini-2.5-flash"
GEMINI_PRO_MODEL = "gemini-2.5-pro"
OPENAI_JUDGE_MODEL = "gpt-5-mini"
OPENROUTER_JUDGE_MODEL = "openai/gpt-5-mini"

OPENAI_REASONING_PROMPT_PREFIX = (
    "You are a world-class expert. Reason step-by-step before providing your answer. "
)

GEMINI_THINKING_BUDGETS: dict[Effort, int] = {
    Effort.LOW: 8192,
    Effort.MEDIUM: 24576,
    Effort.HIGH: 32768,
    Effort.DYNAMIC: -1,
}

_GEMINI_BASE_TEMPERATURE = 0.5
_GEMINI_TEMPERATURE_STEP = 0.08

__all__ = [
    "GEMINI_FLASH_MODEL",
    "GEMINI_PRO_MODEL",
    "OPENAI_JUDGE_MODEL",
    "OPENAI_REASONING_PROMPT_PREFIX",
    "GEMINI_THINKING_BUDGETS",
    "gemini_thinking_budget",
    "gemini_agent_temperature",
    "build_agent_request",
    "build_judge",
]


def gemini_thinking_budget(effort: Effort, model: str, *, allow_disable: bool = True) -> int:
    """effort を Gemini の thinking_budget に写す。

    ``none`` は思考を無効化できる flash 系に限り 0、それ以外は動的 (-1)。
    """
    if effort is Effort.NONE:
        if allow_disable and "flash" in model:
            return 0
        return GEMINI_THINKING_BUDGETS[Effort.DYNAMIC]
    return GEMINI_THINKING_BUDGETS[effort]


def gemini_agent_temperature(index: int) -> float:
    # エージェントごとに温度をずらして多様性を出す
    return min(2.0, _GEMINI_BASE_TEMPERATURE + index * _GEMINI_TEMPERATURE_STEP)


def build_agent_request(
    config: AgentConfig,
    index: int,
    prompt: str,
    images: Sequence[ImageInput] = (),
) -> ProviderRequest:
    persona = config.expert.persona
    settings = config.settings
    match config:
        case GeminiAgentConfig():
            return ProviderRequest(
                model=config.model,
                prompt=prompt,
                system_prompt=persona,
                images=images,
                temperature=gemini_agent_temperature(index),
                timeout_s=settings.timeout_s,
                options={
                    "thinking_budget": gemini_thinking_budget(
                        config.settings.effort, config.model
                    )
                },
            )
        case OpenAIAgentConfig():
            options: dict[str, object] = {}
            if is_reasoning_model(config.model):
                options = {
                    "reasoning": {"effort": settings.effort.value},
                    "text": {"verbosity": settings.verbosity.value},
                }
            return ProviderRequest(
                model=config.model,
                prompt=prompt,
                system_prompt=OPENAI_REASONING_PROMPT_PREFIX + persona,
                images=images,
                timeout_s=settings.timeout_s,
                options=options,
            )
        case OpenRouterAgentConfig():
            knobs = config.settings
            return ProviderRequest(
                model=config.model,
                prompt=prompt,
                system_prompt=persona,
                images=images,
                temperature=knobs.temperature,
                timeout_s=knobs.timeout_s,
                options={
                    "top_p": knobs.top_p,
                    "top_k": knobs.top_k,
                    "frequency_penalty": knobs.frequency_penalty,
                    "presence_penalty": knobs.presence_penalty,
                    "repetition_penalty": knobs.repetition_penalty,
                },
            )
    raise ConfigError(f"unsupported agent config: {type(config).__name__}")


def build_judge(config: AgentConfig, clients: ProviderClients) -> Judge:
    """エージェントのプロバイダに合わせたジャッジを返す。"""
    timeout_s = config.settings.timeout_s
    match config:
        case GeminiAgentConfig():
            model = GEMINI_PRO_MODEL if config.model == GEMINI_PRO_MODEL else GEMINI_FLASH_MODEL
            return Judge(
                clients.for_provider(ProviderTag.GEMINI),
                model,
                timeout_s=timeout_s,
                options={"response_mime_type": "application/json"},
            )
        case OpenAIAgentConfig():
            return Judge(
                clients.for_provider(ProviderTag.OPENAI),
                OPENAI_JUDGE_MODEL,
                system_prompt=OPENAI_REASONING_PROMPT_PREFIX + JUDGE_SYSTEM_PROMPT,
                timeout_s=timeout_s,
            )
        case OpenRouterAgentConfig():
            if clients.has(ProviderTag.OPENAI):
                return Judge(
                    clients.for_provider(ProviderTag.OPENAI),
                    OPENAI_JUDGE_MODEL,
                    system_prompt=OPENAI_REASONING_PROMPT_PREFIX + JUDGE_SYSTEM_PROMPT,
                    timeout_s=timeout_s,
                )
            return Judge(
                clients.for_provider(ProviderTag.OPENROUTER),
                OPENROUTER_JUDGE_MODEL,
                timeout_s=timeout_s,
            )
    raise ConfigError(f"unsupported agent config: {type(config).__name__}")
