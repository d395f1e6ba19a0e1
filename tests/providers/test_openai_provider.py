from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import httpx
import openai
import pytest

from llm_moe.errors import AuthError, RateLimitError, RetriableError
from llm_moe.provider_spi import ImageInput, ProviderRequest
from llm_moe.providers import OpenAIProvider
from llm_moe.providers.openai import (
    is_reasoning_model,
    normalize_openai_exception,
    supports_temperature,
)


class _FakeEvents:
    def __init__(self, events: list[Any]) -> None:
        self._events = events
        self.closed = False

    def __iter__(self):
        return iter(self._events)

    def close(self) -> None:
        self.closed = True


class _FakeResponses:
    def __init__(self, result: Any) -> None:
        self._result = result
        self.calls: list[dict[str, Any]] = []

    def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        if isinstance(self._result, Exception):
            raise self._result
        return self._result


def _provider(result: Any) -> tuple[OpenAIProvider, _FakeResponses]:
    responses = _FakeResponses(result)
    client = SimpleNamespace(responses=responses)
    return OpenAIProvider(client=client), responses


def test_invoke_maps_request_to_responses_api() -> None:
    result = SimpleNamespace(
        output_text="4",
        model="gpt-5",
        status="completed",
        usage=SimpleNamespace(input_tokens=10, output_tokens=2),
    )
    provider, responses = _provider(result)
    request = ProviderRequest(
        model="gpt-5",
        prompt="2+2?",
        system_prompt="You are exact.",
        images=[ImageInput("image/jpeg", "Zm9v")],
        temperature=0.3,
        timeout_s=30.0,
        options={"reasoning": {"effort": "high"}, "text": {"verbosity": "low"}},
    )

    response = provider.invoke(request)

    assert response.text == "4"
    assert response.token_usage.total == 12
    kwargs = responses.calls[0]
    assert kwargs["instructions"] == "You are exact."
    assert kwargs["reasoning"] == {"effort": "high"}
    assert kwargs["text"] == {"verbosity": "low"}
    assert kwargs["timeout"] == 30.0
    assert "temperature" not in kwargs
    parts = kwargs["input"][0]["content"]
    assert parts[1] == {"type": "input_image", "image_url": "data:image/jpeg;base64,Zm9v"}


def test_temperature_sent_for_non_reasoning_models() -> None:
    provider, responses = _provider(SimpleNamespace(output_text="ok"))
    provider.invoke(ProviderRequest(model="gpt-4.1", temperature=0.0))
    assert responses.calls[0]["temperature"] == 0.0
    assert supports_temperature("gpt-4.1")
    assert not supports_temperature("o3-mini")



@pytest.mark.parametrize(
    ("model", "expected"),
    [
        ("gpt-5", True),
        ("gpt-5-mini", True),
        ("o3-mini", True),
        ("o4-mini", True),
        ("gpt-4.1", False),
    ],
)
def test_is_reasoning_model(model: str, expected: bool) -> None:
    assert is_reasoning_model(model) is expected


def test_stream_yields_text_deltas() -> None:
    events = _FakeEvents(
        [
            SimpleNamespace(type="response.created"),
            SimpleNamespace(type="response.output_text.delta", delta="Hel"),
            SimpleNamespace(type="response.output_text.delta", delta="lo"),
            SimpleNamespace(type="response.completed"),
        ]
    )
    provider, responses = _provider(events)

    async def _collect() -> list[str]:
        return [chunk async for chunk in provider.generate_stream(ProviderRequest(model="gpt-5"))]

    assert asyncio.run(_collect()) == ["Hel", "lo"]
    assert responses.calls[0]["stream"] is True
    assert events.closed is True


def test_stream_failure_event_raises() -> None:
    events = _FakeEvents([SimpleNamespace(type="error", message="overloaded")])
    provider, _ = _provider(events)

    with pytest.raises(RetriableError, match="overloaded"):
        list(provider.stream(ProviderRequest(model="gpt-5")))


def test_sdk_errors_are_normalized() -> None:
    request = httpx.Request("POST", "https://api.openai.com/v1/responses")
    rate_limited = openai.RateLimitError(
        "slow down", response=httpx.Response(429, request=request), body=None
    )
    provider, _ = _provider(rate_limited)

    with pytest.raises(RateLimitError):
        provider.invoke(ProviderRequest(model="gpt-5"))

    unauthorized = openai.AuthenticationError(
        "bad key", response=httpx.Response(401, request=request), body=None
    )
    assert isinstance(normalize_openai_exception(unauthorized), AuthError)
    server = openai.InternalServerError(
        "boom", response=httpx.Response(500, request=request), body=None
    )
    assert isinstance(normalize_openai_exception(server), RetriableError)


def test_missing_key_is_auth_error() -> None:
    with pytest.raises(AuthError):
        OpenAIProvider().invoke(ProviderRequest(model="gpt-5"))
