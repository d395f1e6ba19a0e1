from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .cancellation import CancellationToken


@dataclass(frozen=True, slots=True)
class ImageInput:
    """base64 でエンコード済みのインライン画像。"""

    mime_type: str
    data: str

    @property
    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


@dataclass(frozen=True, slots=True)
class TokenLogprob:
    token: str
    logprob: float


@dataclass(frozen=True, slots=True)
class Step:
    """生成 1 単位分のトークンと top-k 候補（空のこともある）。"""

    token: str
    top_k: tuple[TokenLogprob, ...] = ()


@dataclass
class ProviderRequest:
    model: str = field(default="")
    prompt: str = ""
    system_prompt: str | None = None
    images: Sequence[ImageInput] = ()
    max_tokens: int | None = None
    temperature: float | None = None
    timeout_s: float | None = None
    options: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        model = (self.model or "").strip()
        if not model:
            raise ValueError("ProviderRequest.model must be a non-empty string")
        self.model = model

        self.prompt = self.prompt or ""
        if self.system_prompt is not None:
            self.system_prompt = self.system_prompt.strip() or None
        self.images = tuple(self.images or ())

        if self.options is None:
            self.options = {}


@dataclass
class TokenUsage:
    prompt: int = 0
    completion: int = 0

    @property
    def total(self) -> int:
        return self.prompt + self.completion


@dataclass
class ProviderResponse:
    text: str
    latency_ms: int
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    model: str | None = None
    finish_reason: str | None = None
    raw: Any | None = None


@runtime_checkable
class LLMClient(Protocol):
    def name(self) -> str: ...
    def capabilities(self) -> set[str]: ...

    async def generate_once(
        self, request: ProviderRequest, cancellation: CancellationToken | None = None
    ) -> ProviderResponse: ...

    def generate_stream(
        self, request: ProviderRequest, cancellation: CancellationToken | None = None
    ) -> AsyncIterator[str]: ...


class LogprobClient(LLMClient, Protocol):
    """``logprobs`` capability を持つクライアント。"""

    def stream_steps(
        self, request: ProviderRequest, cancellation: CancellationToken | None = None
    ) -> AsyncIterator[Step]: ...


__all__ = [
    "ImageInput",
    "TokenLogprob",
    "Step",
    "ProviderRequest",
    "ProviderResponse",
    "TokenUsage",
    "LLMClient",
    "LogprobClient",
]
