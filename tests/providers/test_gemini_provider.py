from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from llm_moe.errors import AuthError, RateLimitError, RetriableError, TimeoutError
from llm_moe.provider_spi import ImageInput, ProviderRequest
from llm_moe.providers import GeminiProvider
from llm_moe.providers.gemini import translate_error


class _FakeModels:
    def __init__(self, result: Any) -> None:
        self._result = result
        self.calls: list[dict[str, Any]] = []

    def generate_content(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        return self._result

    def generate_content_stream(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        return iter(self._result)


def _provider(result: Any) -> tuple[GeminiProvider, _FakeModels]:
    models = _FakeModels(result)
    return GeminiProvider(client=SimpleNamespace(models=models)), models


def test_invoke_builds_generation_config() -> None:
    provider, models = _provider(SimpleNamespace(text="42", candidates=[]))
    request = ProviderRequest(
        model="gemini-2.5-flash",
        prompt="answer?",
        system_prompt="You are terse.",
        temperature=0.58,
        timeout_s=60.0,
        options={"thinking_budget": 0, "response_mime_type": "application/json"},
    )

    response = provider.invoke(request)

    assert response.text == "42"
    config = models.calls[0]["config"]
    assert config.system_instruction == "You are terse."
    assert config.temperature == pytest.approx(0.58)
    assert config.thinking_config.thinking_budget == 0
    assert config.response_mime_type == "application/json"
    assert config.http_options.timeout == 60000
    assert models.calls[0]["contents"] == "answer?"


def test_images_are_sent_as_inline_parts() -> None:
    provider, models = _provider(SimpleNamespace(text="cat", candidates=[]))
    provider.invoke(
        ProviderRequest(model="gemini-2.5-pro", prompt="what?", images=[ImageInput("image/png", "Zm9v")])
    )

    contents = models.calls[0]["contents"]
    parts = contents[0].parts
    assert parts[0].text == "what?"
    assert parts[1].inline_data.data == b"foo"
    assert parts[1].inline_data.mime_type == "image/png"


def test_stream_skips_empty_chunks() -> None:
    chunks = [SimpleNamespace(text="a"), SimpleNamespace(text=None), SimpleNamespace(text="b")]
    provider, _ = _provider(chunks)

    async def _collect() -> list[str]:
        return [chunk async for chunk in provider.generate_stream(ProviderRequest(model="gemini-2.5-pro"))]

    assert asyncio.run(_collect()) == ["a", "b"]


class _ApiError(Exception):
    def __init__(self, code: int, status: str) -> None:
        super().__init__(f"{code} {status}")
        self.code = code
        self.status = status


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (_ApiError(429, "RESOURCE_EXHAUSTED"), RateLimitError),
        (_ApiError(403, "PERMISSION_DENIED"), AuthError),
        (_ApiError(504, "DEADLINE_EXCEEDED"), TimeoutError),
        (_ApiError(500, "INTERNAL"), RetriableError),
    ],
)
def test_translate_error(error: Exception, expected: type[Exception]) -> None:
    assert isinstance(translate_error(error), expected)


def test_missing_key_is_auth_error() -> None:
    with pytest.raises(AuthError):
        GeminiProvider().invoke(ProviderRequest(model="gemini-2.5-pro"))
