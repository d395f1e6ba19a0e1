"""Mixture-of-experts orchestration with confidence-driven sampling."""
from __future__ import annotations

from .arbiter import Arbiter, build_synthesis_prompt
from .cancellation import CancellationToken
from .dispatcher import Dispatcher, ProviderPolicy
from .errors import AllFailedError, CancellationError, ConfigError
from .models import (
    AgentStatus,
    ArbiterConfig,
    Draft,
    Expert,
    ExpertDispatch,
    GenerationStrategy,
    RunRequest,
)
from .orchestrator import OrchestrationCallbacks, OrchestrationResult, Orchestrator
from .providers import ProviderClients, provider_for_model
from .tokens import TokenEstimator

__all__ = [
    "AgentStatus",
    "AllFailedError",
    "Arbiter",
    "ArbiterConfig",
    "CancellationError",
    "CancellationToken",
    "ConfigError",
    "Dispatcher",
    "Draft",
    "Expert",
    "ExpertDispatch",
    "GenerationStrategy",
    "OrchestrationCallbacks",
    "OrchestrationResult",
    "Orchestrator",
    "ProviderClients",
    "ProviderPolicy",
    "RunRequest",
    "TokenEstimator",
    "build_synthesis_prompt",
    "provider_for_model",
]
