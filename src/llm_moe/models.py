"""オーケストレーションのデータモデル。"""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar

from .errors import ConfigError
from .provider_spi import ImageInput

FAILED_DRAFT_CONTENT = "This agent failed to generate a response."


class ProviderTag(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"
    OPENROUTER = "openrouter"

    @property
    def label(self) -> str:
        return {"gemini": "Gemini", "openai": "OpenAI", "openrouter": "OpenRouter"}[self.value]


class AgentStatus(str, Enum):
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (AgentStatus.COMPLETED, AgentStatus.FAILED)


class GenerationStrategy(str, Enum):
    SINGLE = "single"
    DEEPCONF_OFFLINE = "deepconf-offline"
    DEEPCONF_ONLINE = "deepconf-online"


class ConfidenceSource(str, Enum):
    """マルチトレース時の信頼度の出どころ。"""

    JUDGE = "judge"
    LOGPROBS = "logprobs"


class Effort(str, Enum):
    DYNAMIC = "dynamic"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class Verbosity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True, slots=True)
class Expert:
    id: str
    name: str
    persona: str


@dataclass(frozen=True, slots=True)
class ExpertDispatch:
    """実行対象となる 1 エージェント枠。"""

    agent_id: str
    expert: Expert
    provider: ProviderTag
    model: str

    @property
    def name(self) -> str:
        return self.expert.name

    @property
    def persona(self) -> str:
        return self.expert.persona


@dataclass(frozen=True, slots=True)
class SamplingSettings:
    generation_strategy: GenerationStrategy = GenerationStrategy.SINGLE
    confidence_source: ConfidenceSource = ConfidenceSource.JUDGE
    trace_count: int = 8
    eta_percent: int = 90
    tau: float = 0.95
    group_window: int = 2048
    timeout_s: float = 120.0

    def __post_init__(self) -> None:
        if self.trace_count < 2:
            raise ConfigError("trace_count must be >= 2")
        if self.eta_percent not in (10, 90):
            raise ConfigError("eta_percent must be 10 or 90")
        if not 0.0 < self.tau <= 1.0:
            raise ConfigError("tau must be in (0, 1]")
        if self.group_window < 1:
            raise ConfigError("group_window must be >= 1")
        if not 1.0 <= self.timeout_s <= 600.0:
            raise ConfigError("timeout_s must be between 1 and 600 seconds")

    @property
    def multi_trace(self) -> bool:
        return self.generation_strategy is not GenerationStrategy.SINGLE


@dataclass(frozen=True, slots=True)
class GeminiSettings(SamplingSettings):
    effort: Effort = Effort.DYNAMIC


@dataclass(frozen=True, slots=True)
class OpenAISettings(SamplingSettings):
    effort: Effort = Effort.MEDIUM
    verbosity: Verbosity = Verbosity.MEDIUM

    def __post_init__(self) -> None:
        SamplingSettings.__post_init__(self)
        if self.effort not in (Effort.MEDIUM, Effort.HIGH):
            raise ConfigError("OpenAI agents support effort 'medium' or 'high' only")


@dataclass(frozen=True, slots=True)
class OpenRouterSettings(SamplingSettings):
    temperature: float = 0.7
    top_p: float = 1.0
    top_k: int = 50
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    repetition_penalty: float = 1.0


@dataclass(slots=True)
class GeminiAgentConfig:
    id: str
    expert: Expert
    model: str
    settings: GeminiSettings = field(default_factory=GeminiSettings)
    status: AgentStatus = AgentStatus.PENDING

    provider: ClassVar[ProviderTag] = ProviderTag.GEMINI


@dataclass(slots=True)
class OpenAIAgentConfig:
    id: str
    expert: Expert
    model: str
    settings: OpenAISettings = field(default_factory=OpenAISettings)
    status: AgentStatus = AgentStatus.PENDING

    provider: ClassVar[ProviderTag] = ProviderTag.OPENAI


@dataclass(slots=True)
class OpenRouterAgentConfig:
    id: str
    expert: Expert
    model: str
    settings: OpenRouterSettings = field(default_factory=OpenRouterSettings)
    status: AgentStatus = AgentStatus.PENDING

    provider: ClassVar[ProviderTag] = ProviderTag.OPENROUTER


AgentConfig = GeminiAgentConfig | OpenAIAgentConfig | OpenRouterAgentConfig


def to_dispatch(config: AgentConfig) -> ExpertDispatch:
    return ExpertDispatch(
        agent_id=config.id,
        expert=config.expert,
        provider=config.provider,
        model=config.model,
    )


@dataclass(frozen=True, slots=True)
class Draft:
    agent_id: str
    expert: ExpertDispatch
    content: str
    status: AgentStatus
    error: str | None = None
    is_partial: bool = False

    @classmethod
    def failed(cls, expert: ExpertDispatch, error: str) -> Draft:
        return cls(
            agent_id=expert.agent_id,
            expert=expert,
            content=FAILED_DRAFT_CONTENT,
            status=AgentStatus.FAILED,
            error=error,
        )


@dataclass(frozen=True, slots=True)
class ArbiterConfig:
    model: str
    verbosity: Verbosity = Verbosity.MEDIUM
    effort: Effort = Effort.DYNAMIC


@dataclass(frozen=True, slots=True)
class RunRequest:
    prompt: str
    agents: Sequence[AgentConfig]
    arbiter: ArbiterConfig
    images: Sequence[ImageInput] = ()


__all__ = [
    "FAILED_DRAFT_CONTENT",
    "ProviderTag",
    "AgentStatus",
    "GenerationStrategy",
    "ConfidenceSource",
    "Effort",
    "Verbosity",
    "Expert",
    "ExpertDispatch",
    "SamplingSettings",
    "GeminiSettings",
    "OpenAISettings",
    "OpenRouterSettings",
    "GeminiAgentConfig",
    "OpenAIAgentConfig",
    "OpenRouterAgentConfig",
    "AgentConfig",
    "to_dispatch",
    "Draft",
    "ArbiterConfig",
    "RunRequest",
]
