from __future__ import annotations

import asyncio
from typing import Any

import pytest

from llm_moe.errors import AuthError, FatalError, RateLimitError, RetriableError, TimeoutError
from llm_moe.provider_spi import ImageInput, ProviderRequest
from llm_moe.providers import OpenRouterProvider
from llm_moe.providers.openrouter import iter_sse_events
from tests.helpers.fakes import FakeResponse, FakeSession, sse


def _provider(responder) -> tuple[OpenRouterProvider, FakeSession]:
    session = FakeSession(responder)
    return OpenRouterProvider(api_key="test-key", session=session), session


def test_invoke_posts_chat_completion() -> None:
    def responder(url: str, payload: dict[str, Any], stream: bool) -> FakeResponse:
        return FakeResponse(
            {
                "model": "meta/llama",
                "choices": [{"message": {"content": "hello"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 3, "completion_tokens": 1},
            }
        )

    provider, session = _provider(responder)
    request = ProviderRequest(
        model="meta/llama",
        prompt="hi",
        system_prompt="be brief",
        temperature=0.7,
        timeout_s=12.0,
        options={"top_k": 40},
    )

    response = provider.invoke(request)

    assert response.text == "hello"
    assert response.finish_reason == "stop"
    assert response.token_usage.total == 4
    url, payload, stream, timeout = session.calls[0]
    assert url.endswith("/chat/completions")
    assert stream is False
    assert timeout == 12.0
    assert payload["messages"][0] == {"role": "system", "content": "be brief"}
    assert payload["temperature"] == 0.7
    assert payload["top_k"] == 40
    assert session.headers["Authorization"] == "Bearer test-key"


def test_images_become_image_url_parts() -> None:
    provider, _ = _provider(lambda *args: FakeResponse())
    payload = provider._build_payload(
        ProviderRequest(model="m/x", prompt="look", images=[ImageInput("image/png", "AAAA")])
    )

    content = payload["messages"][-1]["content"]
    assert content[0] == {"type": "text", "text": "look"}
    assert content[1]["image_url"]["url"] == "data:image/png;base64,AAAA"


def test_stream_yields_deltas_and_closes_response() -> None:
    response = FakeResponse(
        lines=sse(
            {"choices": [{"delta": {"content": "hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
            "[DONE]",
            {"choices": [{"delta": {"content": "ignored"}}]},
        )
    )
    provider, session = _provider(lambda *args: response)

    async def _collect() -> list[str]:
        return [chunk async for chunk in provider.generate_stream(ProviderRequest(model="m/x"))]

    assert asyncio.run(_collect()) == ["hel", "lo"]
    assert session.calls[0][1]["stream"] is True
    assert response.closed is True


def test_step_stream_parses_top_logprobs() -> None:
    event = {
        "choices": [
            {
                "delta": {"content": "Hi"},
                "logprobs": {
                    "content": [
                        {
                            "token": "Hi",
                            "logprob": -0.1,
                            "top_logprobs": [
                                {"token": "Hi", "logprob": -0.1},
                                {"token": "Hello", "logprob": -2.5},
                            ],
                        }
                    ]
                },
            }
        ]
    }
    provider, session = _provider(lambda *args: FakeResponse(lines=sse(event, "[DONE]")))

    async def _collect():
        return [step async for step in provider.stream_steps(ProviderRequest(model="m/x"))]

    steps = asyncio.run(_collect())

    assert [step.token for step in steps] == ["Hi"]
    assert [candidate.logprob for candidate in steps[0].top_k] == [-0.1, -2.5]
    payload = session.calls[0][1]
    assert payload["logprobs"] is True
    assert payload["top_logprobs"] == 5


def test_stream_error_event_is_retriable() -> None:
    lines = sse({"error": {"message": "upstream overloaded"}})
    with pytest.raises(RetriableError, match="upstream overloaded"):
        list(iter_sse_events(lines))


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (401, AuthError),
        (403, AuthError),
        (429, RateLimitError),
        (504, TimeoutError),
        (502, RetriableError),
        (400, FatalError),
    ],
)
def test_http_errors_are_normalized(status: int, expected: type[Exception]) -> None:
    response = FakeResponse(status_code=status)
    provider, _ = _provider(lambda *args: response)

    with pytest.raises(expected):
        provider.invoke(ProviderRequest(model="m/x"))
    assert response.closed is True


def test_missing_api_key_is_auth_error() -> None:
    provider = OpenRouterProvider(session=FakeSession(lambda *args: FakeResponse()))
    with pytest.raises(AuthError):
        provider.invoke(ProviderRequest(model="m/x"))
