from __future__ import annotations

import asyncio

import pytest

from llm_moe.cancellation import CancellationToken
from llm_moe.errors import (
    AuthError,
    CancellationError,
    ConfigError,
    RateLimitError,
    RetriableError,
    TimeoutError,
)
from llm_moe.retry import RetryPolicy, call_with_retry, is_retryable, with_timeout


def test_policy_from_env() -> None:
    policy = RetryPolicy.from_env({"LLM_MOE_RETRY_COUNT": "5", "LLM_MOE_BACKOFF_S": "0.5"})
    assert policy == RetryPolicy(max_retries=5, backoff_s=0.5)
    assert RetryPolicy.from_env({}) == RetryPolicy()


@pytest.mark.parametrize(
    "environ",
    [{"LLM_MOE_RETRY_COUNT": "many"}, {"LLM_MOE_BACKOFF_S": "soon"}, {"LLM_MOE_RETRY_COUNT": "-1"}],
)
def test_policy_from_env_rejects_bad_values(environ: dict[str, str]) -> None:
    with pytest.raises(ConfigError):
        RetryPolicy.from_env(environ)


def test_delay_doubles_per_attempt() -> None:
    policy = RetryPolicy(max_retries=3, backoff_s=1.0)
    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [1.0, 2.0, 4.0]


def test_retryable_classification() -> None:
    assert is_retryable(RateLimitError("429"))
    assert is_retryable(RetriableError("503"))
    assert not is_retryable(TimeoutError("slow"))
    assert not is_retryable(AuthError("nope"))


def test_with_timeout_converts_and_names_label() -> None:
    async def _slow() -> None:
        await asyncio.sleep(1)

    with pytest.raises(TimeoutError, match='Expert "A" exceeded the configured timeout of 0.01s'):
        asyncio.run(with_timeout(_slow(), 0.01, label='Expert "A"'))


def test_call_with_retry_recovers_from_rate_limit() -> None:
    attempts: list[int] = []

    async def _call() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise RateLimitError("slow down")
        return "ok"

    result = asyncio.run(
        call_with_retry(_call, RetryPolicy(max_retries=3, backoff_s=0.0), CancellationToken())
    )
    assert result == "ok"
    assert len(attempts) == 3


def test_call_with_retry_gives_up_after_budget(caplog: pytest.LogCaptureFixture) -> None:
    attempts: list[int] = []

    async def _call() -> str:
        attempts.append(1)
        raise RetriableError("flaky")

    with caplog.at_level("WARNING", logger="llm_moe.retry"):
        with pytest.raises(RetriableError):
            asyncio.run(
                call_with_retry(
                    _call, RetryPolicy(max_retries=2, backoff_s=0.0), CancellationToken(), label="x"
                )
            )
    assert len(attempts) == 3
    assert sum("retrying" in record.getMessage() for record in caplog.records) == 2


def test_call_with_retry_does_not_retry_fatal_errors() -> None:
    attempts: list[int] = []

    async def _call() -> str:
        attempts.append(1)
        raise AuthError("bad key")

    with pytest.raises(AuthError):
        asyncio.run(call_with_retry(_call, RetryPolicy(max_retries=3), CancellationToken()))
    assert len(attempts) == 1


def test_backoff_is_interrupted_by_cancellation() -> None:
    async def _scenario() -> int:
        token = CancellationToken()
        attempts: list[int] = []

        async def _call() -> str:
            attempts.append(1)
            raise RateLimitError("429")

        async def _cancel_soon() -> None:
            await asyncio.sleep(0.01)
            token.cancel("user stop")

        canceller = asyncio.ensure_future(_cancel_soon())
        try:
            await call_with_retry(_call, RetryPolicy(max_retries=5, backoff_s=10.0), token)
        finally:
            await canceller
        return len(attempts)

    with pytest.raises(CancellationError, match="user stop"):
        asyncio.run(_scenario())
