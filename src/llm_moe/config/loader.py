"""実行設定ファイルの読み込みユーティリティ。"""
from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError
import yaml

from ..errors import ConfigError
from ..models import (
    AgentConfig,
    ArbiterConfig,
    Expert,
    GeminiAgentConfig,
    GeminiSettings,
    OpenAIAgentConfig,
    OpenAISettings,
    OpenRouterAgentConfig,
    OpenRouterSettings,
    RunRequest,
)
from ..provider_spi import ImageInput
from ..providers import provider_for_model
from .schema import (
    GeminiAgentModel,
    OpenAIAgentModel,
    OpenRouterAgentModel,
    RunConfigModel,
)

__all__ = ["RunConfig", "load_run_config", "parse_run_config"]


def _format_validation_error(path: Path | str, exc: ValidationError) -> str:
    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part is not None)
        message = error.get("msg", "unknown error")
        if location:
            details.append(f"{location}: {message}")
        else:
            details.append(message)
    summary = "; ".join(details)
    return f"{path}: {summary}"


def _load_yaml(path: Path) -> Mapping[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"{path}: cannot read config: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: invalid YAML: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"{path}: top-level YAML value must be a mapping")
    return data


class RunConfig:
    """検証済みの設定。プロンプトを与えると RunRequest を作る。"""

    def __init__(self, agents: list[AgentConfig], arbiter: ArbiterConfig) -> None:
        self.agents = agents
        self.arbiter = arbiter

    def request(self, prompt: str, images: tuple[ImageInput, ...] = ()) -> RunRequest:
        if not prompt.strip():
            raise ConfigError("prompt must be a non-empty string")
        return RunRequest(prompt=prompt, agents=self.agents, arbiter=self.arbiter, images=images)


def _agent_from_model(
    index: int, model: GeminiAgentModel | OpenAIAgentModel | OpenRouterAgentModel
) -> AgentConfig:
    agent_id = model.id or f"{model.provider}-{index + 1}"
    expert = Expert(**model.expert.model_dump())
    settings = model.settings.model_dump()
    match model:
        case GeminiAgentModel():
            return GeminiAgentConfig(
                id=agent_id, expert=expert, model=model.model, settings=GeminiSettings(**settings)
            )
        case OpenAIAgentModel():
            return OpenAIAgentConfig(
                id=agent_id, expert=expert, model=model.model, settings=OpenAISettings(**settings)
            )
        case OpenRouterAgentModel():
            return OpenRouterAgentConfig(
                id=agent_id,
                expert=expert,
                model=model.model,
                settings=OpenRouterSettings(**settings),
            )
    raise ConfigError(f"agents.{index}: unsupported provider {model.provider!r}")


def parse_run_config(data: Mapping[str, Any], *, source: Path | str = "<config>") -> RunConfig:
    try:
        model = RunConfigModel.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(_format_validation_error(source, exc)) from exc

    agents: list[AgentConfig] = []
    seen: set[str] = set()
    for index, agent_model in enumerate(model.agents):
        try:
            agent = _agent_from_model(index, agent_model)
        except ConfigError as exc:
            raise ConfigError(f"{source}: agents.{index}: {exc}") from exc
        if agent.id in seen:
            raise ConfigError(f"{source}: agents.{index}.id: duplicate agent id {agent.id!r}")
        seen.add(agent.id)
        agents.append(agent)

    arbiter = model.arbiter
    try:
        provider_for_model(arbiter.model)
    except ConfigError as exc:
        raise ConfigError(f"{source}: arbiter.model: {exc}") from exc
    return RunConfig(
        agents,
        ArbiterConfig(model=arbiter.model, verbosity=arbiter.verbosity, effort=arbiter.effort),
    )


def load_run_config(path: str | Path) -> RunConfig:
    """YAML の実行設定を読み込み検証する。"""
    config_path = Path(path)
    return parse_run_config(_load_yaml(config_path), source=config_path)
