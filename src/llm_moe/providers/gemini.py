"""Gemini provider implementation backed by the google-genai SDK."""

from __future__ import annotations

import base64
from collections.abc import Iterator
import os
import time
from typing import Any

from google import genai
from google.genai import types

from ..errors import (
    AuthError,
    MoEError,
    RateLimitError,
    RetriableError,
    TimeoutError,
)
from ..provider_spi import ProviderRequest, ProviderResponse, TokenUsage
from .base import BaseProvider, SyncStream

__all__ = ["GeminiProvider", "translate_error"]


def _normalize_status(value: Any) -> str:
    if not value:
        return ""
    if hasattr(value, "name") and isinstance(value.name, str):
        value = value.name
    text = str(value).strip()
    if not text:
        return ""
    token = text.split()[0]
    if "." in token:
        token = token.split(".")[-1]
    return token.strip(" <>:, '\"").upper()


def translate_error(exc: Exception) -> Exception:
    if isinstance(exc, MoEError):
        return exc

    exc_type = type(exc)
    names = (exc_type.__name__, exc_type.__module__ or "")
    if any("timeout" in name.lower() for name in names):
        return TimeoutError(str(exc))

    status_text = _normalize_status(getattr(exc, "status", None))
    code = getattr(exc, "code", None)
    if code is None:
        code = getattr(getattr(exc, "response", None), "status_code", None)
    try:
        http_status = int(code) if code is not None else None
    except (TypeError, ValueError):
        http_status = None

    message = str(exc)
    if status_text in {"UNAUTHENTICATED", "PERMISSION_DENIED"} or http_status in {401, 403}:
        return AuthError(message)
    if status_text in {"RESOURCE_EXHAUSTED", "QUOTA_EXCEEDED"} or http_status == 429:
        return RateLimitError(message)
    if status_text in {"DEADLINE_EXCEEDED", "GATEWAY_TIMEOUT"} or http_status in {408, 504}:
        return TimeoutError(message)
    return RetriableError(message)


def _coerce_usage(response: Any) -> TokenUsage:
    usage = getattr(response, "usage_metadata", None)
    if usage is None:
        return TokenUsage()
    return TokenUsage(
        prompt=int(getattr(usage, "prompt_token_count", 0) or 0),
        completion=int(getattr(usage, "candidates_token_count", 0) or 0),
    )


def _coerce_finish_reason(response: Any) -> str | None:
    candidates = getattr(response, "candidates", None) or []
    for candidate in candidates:
        finish = getattr(candidate, "finish_reason", None)
        if finish is None:
            continue
        name = getattr(finish, "name", None)
        return name if isinstance(name, str) else str(finish)
    return None


class GeminiProvider(BaseProvider):
    """Provider implementation backed by the Gemini SDK (models API)."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        client: Any | None = None,
        name: str = "gemini",
    ) -> None:
        super().__init__(name=name)
        self._api_key = (api_key or os.getenv("GEMINI_API_KEY") or "").strip()
        self._client = client

    def capabilities(self) -> set[str]:
        return {"chat", "stream", "json", "vision"}

    def _resolve_client(self) -> Any:
        if self._client is not None:
            return self._client
        if not self._api_key:
            raise AuthError("GEMINI_API_KEY is not set")
        self._client = genai.Client(api_key=self._api_key)
        return self._client

    def _contents(self, request: ProviderRequest) -> Any:
        if not request.images:
            return request.prompt
        parts = [types.Part.from_text(text=request.prompt)]
        for image in request.images:
            parts.append(
                types.Part.from_bytes(
                    data=base64.b64decode(image.data), mime_type=image.mime_type
                )
            )
        return [types.Content(role="user", parts=parts)]

    def _config(self, request: ProviderRequest) -> types.GenerateContentConfig:
        kwargs: dict[str, Any] = {}
        if request.system_prompt:
            kwargs["system_instruction"] = request.system_prompt
        if request.temperature is not None:
            kwargs["temperature"] = float(request.temperature)
        if request.max_tokens is not None:
            kwargs["max_output_tokens"] = int(request.max_tokens)
        if request.timeout_s is not None:
            kwargs["http_options"] = types.HttpOptions(timeout=int(request.timeout_s * 1000))
        options = dict(request.options)
        budget = options.pop("thinking_budget", None)
        if budget is not None:
            kwargs["thinking_config"] = types.ThinkingConfig(thinking_budget=int(budget))
        kwargs.update(options)
        return types.GenerateContentConfig(**kwargs)

    def invoke(self, request: ProviderRequest) -> ProviderResponse:
        ts0 = time.time()
        try:
            response = self._resolve_client().models.generate_content(
                model=request.model,
                contents=self._contents(request),
                config=self._config(request),
            )
        except MoEError:
            raise
        except Exception as exc:
            raise translate_error(exc) from exc
        latency_ms = int((time.time() - ts0) * 1000)
        text = getattr(response, "text", None)
        return ProviderResponse(
            text=text if isinstance(text, str) else "",
            latency_ms=latency_ms,
            token_usage=_coerce_usage(response),
            model=request.model,
            finish_reason=_coerce_finish_reason(response),
            raw=response,
        )

    def stream(self, request: ProviderRequest) -> SyncStream[str]:
        try:
            chunks = self._resolve_client().models.generate_content_stream(
                model=request.model,
                contents=self._contents(request),
                config=self._config(request),
            )
        except MoEError:
            raise
        except Exception as exc:
            raise translate_error(exc) from exc

        def _texts() -> Iterator[str]:
            try:
                for chunk in chunks:
                    text = getattr(chunk, "text", None)
                    if isinstance(text, str) and text:
                        yield text
            except MoEError:
                raise
            except Exception as exc:
                raise translate_error(exc) from exc

        close = getattr(chunks, "close", None)
        return SyncStream(_texts(), on_close=close if callable(close) else None)
