"""実行設定ファイル検証用の Pydantic モデル。"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models import ConfidenceSource, Effort, GenerationStrategy, Verbosity

__all__ = [
    "ExpertModel",
    "GeminiSettingsModel",
    "OpenAISettingsModel",
    "OpenRouterSettingsModel",
    "AgentModel",
    "ArbiterModel",
    "RunConfigModel",
]


class ExpertModel(BaseModel):
    """専門家ペルソナのスキーマ。"""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    persona: str = ""


class _SamplingModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    generation_strategy: GenerationStrategy = GenerationStrategy.SINGLE
    confidence_source: ConfidenceSource = ConfidenceSource.JUDGE
    trace_count: int = Field(default=8, ge=2)
    eta_percent: Literal[10, 90] = 90
    tau: float = Field(default=0.95, gt=0.0, le=1.0)
    group_window: int = Field(default=2048, ge=1)
    timeout_s: float = Field(default=120.0, ge=1.0, le=600.0)


class GeminiSettingsModel(_SamplingModel):
    effort: Effort = Effort.DYNAMIC


class OpenAISettingsModel(_SamplingModel):
    effort: Effort = Effort.MEDIUM
    verbosity: Verbosity = Verbosity.MEDIUM

    @field_validator("effort")
    @classmethod
    def _reasoning_effort(cls, value: Effort) -> Effort:
        if value not in (Effort.MEDIUM, Effort.HIGH):
            raise ValueError("OpenAI agents support effort 'medium' or 'high' only")
        return value


class OpenRouterSettingsModel(_SamplingModel):
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    top_p: float = Field(default=1.0, gt=0.0, le=1.0)
    top_k: int = Field(default=50, ge=0)
    frequency_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)
    presence_penalty: float = Field(default=0.0, ge=-2.0, le=2.0)
    repetition_penalty: float = Field(default=1.0, gt=0.0, le=2.0)


class _AgentBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    model: str = Field(min_length=1)
    expert: ExpertModel


class GeminiAgentModel(_AgentBase):
    provider: Literal["gemini"]
    settings: GeminiSettingsModel = Field(default_factory=GeminiSettingsModel)


class OpenAIAgentModel(_AgentBase):
    provider: Literal["openai"]
    settings: OpenAISettingsModel = Field(default_factory=OpenAISettingsModel)


class OpenRouterAgentModel(_AgentBase):
    provider: Literal["openrouter"]
    settings: OpenRouterSettingsModel = Field(default_factory=OpenRouterSettingsModel)


AgentModel = Annotated[
    GeminiAgentModel | OpenAIAgentModel | OpenRouterAgentModel,
    Field(discriminator="provider"),
]


class ArbiterModel(BaseModel):
    """アービター設定のスキーマ。"""

    model_config = ConfigDict(extra="forbid")

    model: str = Field(min_length=1)
    verbosity: Verbosity = Verbosity.MEDIUM
    effort: Effort = Effort.DYNAMIC


class RunConfigModel(BaseModel):
    """実行設定全体のスキーマ。"""

    model_config = ConfigDict(extra="forbid")

    arbiter: ArbiterModel
    agents: list[AgentModel] = Field(min_length=1)
