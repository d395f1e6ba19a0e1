"""OpenAI プロバイダ実装 (Responses API)。"""
from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
import os
import time
from typing import Any

import openai

from ..errors import (
    AuthError,
    FatalError,
    MoEError,
    RateLimitError,
    RetriableError,
    TimeoutError,
)
from ..provider_spi import ProviderRequest, ProviderResponse, TokenUsage
from .base import BaseProvider, SyncStream

__all__ = [
    "OpenAIProvider",
    "is_reasoning_model",
    "normalize_openai_exception",
    "supports_temperature",
]

_REASONING_MODEL_PREFIXES = ("gpt-5", "o1", "o3", "o4")


def is_reasoning_model(model: str) -> bool:
    """reasoning.effort / text.verbosity を受け付けるモデルかどうか。"""
    return model.startswith(_REASONING_MODEL_PREFIXES)


def supports_temperature(model: str) -> bool:
    # reasoning 系モデルは temperature を受け付けない
    return not is_reasoning_model(model)


def normalize_openai_exception(exc: Exception) -> Exception:
    if isinstance(exc, MoEError):
        return exc
    message = str(exc)
    if isinstance(exc, openai.AuthenticationError | openai.PermissionDeniedError):
        return AuthError(message)
    if isinstance(exc, openai.RateLimitError):
        return RateLimitError(message)
    if isinstance(exc, openai.APITimeoutError):
        return TimeoutError(message)
    if isinstance(exc, openai.APIConnectionError):
        return RetriableError(message)
    if isinstance(exc, openai.APIStatusError):
        code = exc.status_code
        if code in {408, 504}:
            return TimeoutError(message)
        if code >= 500:
            return RetriableError(message)
        return FatalError(message)
    return exc


def _build_input(request: ProviderRequest) -> list[dict[str, Any]]:
    content: list[dict[str, Any]] = [{"type": "input_text", "text": request.prompt}]
    for image in request.images:
        content.append({"type": "input_image", "image_url": image.data_uri})
    return [{"role": "user", "content": content}]


def _coerce_text(response: Any) -> str:
    text = getattr(response, "output_text", None)
    if isinstance(text, str) and text:
        return text
    collected: list[str] = []
    output = getattr(response, "output", None)
    if isinstance(output, Iterable):
        for entry in output:
            content = getattr(entry, "content", None)
            if not isinstance(content, Iterable):
                continue
            for part in content:
                part_text = getattr(part, "text", None)
                if isinstance(part_text, str):
                    collected.append(part_text)
    return "".join(collected)


def _coerce_usage(response: Any) -> TokenUsage:
    usage = getattr(response, "usage", None)
    if usage is None:
        return TokenUsage()
    return TokenUsage(
        prompt=int(getattr(usage, "input_tokens", 0) or 0),
        completion=int(getattr(usage, "output_tokens", 0) or 0),
    )


class OpenAIProvider(BaseProvider):
    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        client: Any | None = None,
        name: str = "openai",
    ) -> None:
        super().__init__(name=name)
        self._api_key = (api_key or os.getenv("OPENAI_API_KEY") or "").strip()
        self._base_url = (base_url or os.getenv("OPENAI_BASE_URL") or "").strip() or None
        self._client = client

    def capabilities(self) -> set[str]:
        return {"chat", "stream", "json", "vision"}

    def _resolve_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self._api_key:
            raise AuthError("OPENAI_API_KEY is not set")
        kwargs: dict[str, Any] = {"api_key": self._api_key}
        if self._base_url:
            kwargs["base_url"] = self._base_url
        self._client = openai.OpenAI(**kwargs)
        return self._client

    def _build_kwargs(self, request: ProviderRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"model": request.model, "input": _build_input(request)}
        if request.system_prompt:
            kwargs["instructions"] = request.system_prompt
        if request.max_tokens is not None:
            kwargs["max_output_tokens"] = int(request.max_tokens)
        if request.temperature is not None and supports_temperature(request.model):
            kwargs["temperature"] = float(request.temperature)
        if request.timeout_s is not None:
            kwargs["timeout"] = float(request.timeout_s)
        for key, value in request.options.items():
            kwargs.setdefault(key, dict(value) if isinstance(value, Mapping) else value)
        return kwargs

    def invoke(self, request: ProviderRequest) -> ProviderResponse:
        kwargs = self._build_kwargs(request)
        ts0 = time.time()
        try:
            response = self._resolve_client().responses.create(**kwargs)
        except MoEError:
            raise
        except Exception as exc:
            raise normalize_openai_exception(exc) from exc
        latency_ms = int((time.time() - ts0) * 1000)
        model_name = getattr(response, "model", None)
        return ProviderResponse(
            text=_coerce_text(response),
            latency_ms=latency_ms,
            token_usage=_coerce_usage(response),
            model=model_name if isinstance(model_name, str) else request.model,
            finish_reason=getattr(response, "status", None),
            raw=response,
        )

    def stream(self, request: ProviderRequest) -> SyncStream[str]:
        kwargs = self._build_kwargs(request)
        try:
            events = self._resolve_client().responses.create(stream=True, **kwargs)
        except MoEError:
            raise
        except Exception as exc:
            raise normalize_openai_exception(exc) from exc

        def _chunks() -> Iterator[str]:
            try:
                for event in events:
                    event_type = getattr(event, "type", "")
                    if event_type == "response.output_text.delta":
                        delta = getattr(event, "delta", "")
                        if isinstance(delta, str) and delta:
                            yield delta
                    elif event_type in {"error", "response.failed"}:
                        detail = getattr(event, "message", None) or event_type
                        raise RetriableError(f"OpenAI stream failed: {detail}")
            except MoEError:
                raise
            except Exception as exc:
                raise normalize_openai_exception(exc) from exc

        close = getattr(events, "close", None)
        return SyncStream(_chunks(), on_close=close if callable(close) else None)
