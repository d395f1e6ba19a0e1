from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, MutableMapping
import json
import os
import time
from typing import Any

import requests

from ..errors import (
    AuthError,
    FatalError,
    MoEError,
    RateLimitError,
    RetriableError,
    TimeoutError,
)
from ..provider_spi import ProviderRequest, ProviderResponse, Step, TokenLogprob, TokenUsage
from .base import BaseProvider, SyncStream

__all__ = ["OpenRouterProvider", "iter_sse_events"]

DEFAULT_TOP_LOGPROBS = 5


def _coerce_text(payload: Mapping[str, Any] | None) -> str:
    if not isinstance(payload, Mapping):
        return ""
    choices = payload.get("choices")
    chunks: list[str] = []
    if isinstance(choices, Iterable):
        for choice in choices:
            if not isinstance(choice, Mapping):
                continue
            message = choice.get("message")
            if isinstance(message, Mapping):
                content = message.get("content")
                if isinstance(content, str):
                    chunks.append(content)
            text_value = choice.get("text")
            if isinstance(text_value, str):
                chunks.append(text_value)
    return "".join(chunks)


def _coerce_usage(payload: Mapping[str, Any] | None) -> TokenUsage:
    if not isinstance(payload, Mapping):
        return TokenUsage()
    usage = payload.get("usage")
    if not isinstance(usage, Mapping):
        return TokenUsage()
    try:
        prompt_value = int(usage.get("prompt_tokens") or 0)
    except (TypeError, ValueError):
        prompt_value = 0
    try:
        completion_value = int(usage.get("completion_tokens") or 0)
    except (TypeError, ValueError):
        completion_value = 0
    return TokenUsage(prompt=prompt_value, completion=completion_value)


def _coerce_finish_reason(payload: Mapping[str, Any] | None) -> str | None:
    if not isinstance(payload, Mapping):
        return None
    choices = payload.get("choices")
    if isinstance(choices, Iterable):
        for choice in choices:
            if isinstance(choice, Mapping):
                finish = choice.get("finish_reason")
                if isinstance(finish, str):
                    return finish
    return None


def _normalize_error(exc: Exception) -> Exception:
    if isinstance(exc, MoEError):
        return exc
    if isinstance(exc, requests.exceptions.Timeout):
        return TimeoutError(str(exc))
    if isinstance(exc, requests.exceptions.ConnectionError):
        return RetriableError(str(exc))
    if isinstance(exc, requests.exceptions.HTTPError):
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
        try:
            code = int(status) if status is not None else None
        except (TypeError, ValueError):
            code = None
        message = str(exc)
        if code in {401, 403}:
            return AuthError(message)
        if code == 429:
            return RateLimitError(message)
        if code in {408, 504}:
            return TimeoutError(message)
        if code is not None and code >= 500:
            return RetriableError(message)
        return FatalError(message)
    if isinstance(exc, requests.exceptions.RequestException):
        return RetriableError(str(exc))
    return exc


def iter_sse_events(lines: Iterable[bytes | str]) -> Iterator[Mapping[str, Any]]:
    """``data:`` 行を JSON として順に返す。``[DONE]`` で終了する。"""
    for raw_line in lines:
        if not raw_line:
            continue
        decoded = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else str(raw_line)
        decoded = decoded.strip()
        if not decoded or decoded.startswith(":"):
            continue
        if decoded.startswith("data:"):
            decoded = decoded[len("data:") :].strip()
        if decoded == "[DONE]":
            return
        try:
            event = json.loads(decoded)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, Mapping):
            continue
        error = event.get("error")
        if isinstance(error, Mapping):
            raise RetriableError(f"OpenRouter stream error: {error.get('message') or error}")
        yield event


def _iter_choices(event: Mapping[str, Any]) -> Iterator[Mapping[str, Any]]:
    choices = event.get("choices")
    if isinstance(choices, Iterable):
        for choice in choices:
            if isinstance(choice, Mapping):
                yield choice


def _delta_text(choice: Mapping[str, Any]) -> str:
    delta = choice.get("delta")
    if isinstance(delta, Mapping):
        content = delta.get("content")
        if isinstance(content, str):
            return content
    return ""


def _steps_from_choice(choice: Mapping[str, Any]) -> list[Step]:
    logprobs = choice.get("logprobs")
    entries = logprobs.get("content") if isinstance(logprobs, Mapping) else None
    if not isinstance(entries, Iterable):
        text = _delta_text(choice)
        return [Step(token=text)] if text else []
    steps: list[Step] = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        token = entry.get("token")
        if not isinstance(token, str):
            continue
        candidates: list[TokenLogprob] = []
        top = entry.get("top_logprobs")
        if isinstance(top, Iterable):
            for candidate in top:
                if not isinstance(candidate, Mapping):
                    continue
                value = candidate.get("logprob")
                cand_token = candidate.get("token")
                if isinstance(cand_token, str) and isinstance(value, int | float):
                    candidates.append(TokenLogprob(token=cand_token, logprob=float(value)))
        steps.append(Step(token=token, top_k=tuple(candidates)))
    return steps


class OpenRouterProvider(BaseProvider):
    def __init__(
        self,
        *,
        api_key: str | None = None,
        session: requests.Session | None = None,
        base_url: str | None = None,
        name: str = "openrouter",
    ) -> None:
        super().__init__(name=name)
        self._api_key = (api_key or os.getenv("OPENROUTER_API_KEY") or "").strip()
        self._session = session or requests.Session()
        self._base_url = (
            base_url or os.getenv("OPENROUTER_BASE_URL") or "https://openrouter.ai/api/v1"
        ).rstrip("/")
        headers = getattr(self._session, "headers", None)
        if isinstance(headers, MutableMapping):
            headers.setdefault("Content-Type", "application/json")
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"

    def capabilities(self) -> set[str]:
        return {"chat", "stream", "vision", "logprobs"}

    def _build_payload(self, request: ProviderRequest) -> dict[str, Any]:
        messages: list[dict[str, Any]] = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        if request.images:
            content: list[dict[str, Any]] = [{"type": "text", "text": request.prompt}]
            for image in request.images:
                content.append({"type": "image_url", "image_url": {"url": image.data_uri}})
            messages.append({"role": "user", "content": content})
        else:
            messages.append({"role": "user", "content": request.prompt})
        payload: dict[str, Any] = {"model": request.model, "messages": messages}
        if request.max_tokens is not None:
            payload["max_tokens"] = int(request.max_tokens)
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        for key, value in request.options.items():
            if key == "stream":
                continue
            payload.setdefault(key, value)
        return payload

    def _post(self, payload: dict[str, Any], request: ProviderRequest, *, stream: bool) -> Any:
        if not self._api_key:
            raise AuthError("OPENROUTER_API_KEY is not set")
        timeout = request.timeout_s if request.timeout_s is not None else 30.0
        url = f"{self._base_url}/chat/completions"
        try:
            response = self._session.post(url, json=payload, stream=stream, timeout=timeout)
        except Exception as exc:
            raise _normalize_error(exc) from exc
        try:
            response.raise_for_status()
        except Exception as exc:
            response.close()
            raise _normalize_error(exc) from exc
        return response

    def invoke(self, request: ProviderRequest) -> ProviderResponse:
        payload = self._build_payload(request)
        ts0 = time.time()
        response = self._post(payload, request, stream=False)
        try:
            data = response.json()
        except Exception as exc:
            raise _normalize_error(exc) from exc
        finally:
            response.close()
        latency_ms = int((time.time() - ts0) * 1000)
        model_name = data.get("model") if isinstance(data, Mapping) else None
        return ProviderResponse(
            text=_coerce_text(data),
            latency_ms=latency_ms,
            token_usage=_coerce_usage(data),
            model=model_name if isinstance(model_name, str) else request.model,
            finish_reason=_coerce_finish_reason(data),
            raw=data,
        )

    def _open_events(self, payload: dict[str, Any], request: ProviderRequest) -> tuple[Any, Iterator[Mapping[str, Any]]]:
        payload["stream"] = True
        response = self._post(payload, request, stream=True)

        def _events() -> Iterator[Mapping[str, Any]]:
            try:
                yield from iter_sse_events(response.iter_lines())
            except MoEError:
                raise
            except Exception as exc:
                raise _normalize_error(exc) from exc

        return response, _events()

    def stream(self, request: ProviderRequest) -> SyncStream[str]:
        response, events = self._open_events(self._build_payload(request), request)

        def _chunks() -> Iterator[str]:
            for event in events:
                for choice in _iter_choices(event):
                    text = _delta_text(choice)
                    if text:
                        yield text

        return SyncStream(_chunks(), on_close=response.close)

    def step_stream(self, request: ProviderRequest) -> SyncStream[Step]:
        payload = self._build_payload(request)
        payload["logprobs"] = True
        payload.setdefault("top_logprobs", DEFAULT_TOP_LOGPROBS)
        response, events = self._open_events(payload, request)

        def _steps() -> Iterator[Step]:
            for event in events:
                for choice in _iter_choices(event):
                    yield from _steps_from_choice(choice)

        return SyncStream(_steps(), on_close=response.close)
