"""CLI 実行本体。"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import TextIO

from ..arbiter import Arbiter
from ..cancellation import CancellationToken
from ..config import load_run_config
from ..dispatcher import Dispatcher
from ..errors import AllFailedError, CancellationError, ConfigError
from ..models import Draft, ExpertDispatch, RunRequest
from ..observability import EventLogger, JsonlLogger
from ..orchestrator import OrchestrationCallbacks, Orchestrator
from ..providers import ProviderClients
from ..retry import RetryPolicy
from .utils import (
    EXIT_CONFIG_ERROR,
    EXIT_INTERRUPTED,
    EXIT_OK,
    EXIT_RUN_FAILED,
    load_env_file,
    read_image,
    read_prompt,
)

LOGGER = logging.getLogger("llm_moe.cli")

__all__ = ["build_orchestrator", "prepare_request", "run_cli", "stream_answer"]


def prepare_request(args: argparse.Namespace) -> RunRequest:
    config = load_run_config(args.config)
    prompt = read_prompt(args.prompt, args.prompt_file)
    images = tuple(read_image(path) for path in args.image)
    return config.request(prompt, images)


def build_orchestrator(
    clients: ProviderClients, event_logger: EventLogger | None = None
) -> Orchestrator:
    dispatcher = Dispatcher(clients, retry=RetryPolicy.from_env(), event_logger=event_logger)
    return Orchestrator(dispatcher, Arbiter(clients), event_logger=event_logger)


def _status_callbacks(err: TextIO) -> OrchestrationCallbacks:
    def _initial(experts: list[ExpertDispatch]) -> None:
        for expert in experts:
            print(f"[{expert.agent_id}] {expert.name} ({expert.model}) queued", file=err)

    def _draft(draft: Draft) -> None:
        suffix = " (partial)" if draft.is_partial else ""
        line = f"[{draft.agent_id}] {draft.status.value}{suffix}"
        if draft.error:
            line += f": {draft.error}"
        print(line, file=err)

    def _switched(original: str, replacement: str, estimated_tokens: int) -> None:
        print(
            f"arbiter switched {original} -> {replacement} (~{estimated_tokens} tokens)",
            file=err,
        )

    return OrchestrationCallbacks(
        on_initial_agents=_initial,
        on_draft_complete=_draft,
        on_arbiter_switched=_switched,
    )


async def stream_answer(
    orchestrator: Orchestrator,
    request: RunRequest,
    cancellation: CancellationToken,
    out: TextIO,
    err: TextIO,
) -> None:
    result = await orchestrator.run(request, _status_callbacks(err), cancellation)
    stream = result.stream
    try:
        async for chunk in stream:
            out.write(chunk)
            out.flush()
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()
    out.write("\n")
    out.flush()


async def _run_async(
    orchestrator: Orchestrator, request: RunRequest, out: TextIO, err: TextIO
) -> int:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
    except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows
        pass
    try:
        await stream_answer(orchestrator, request, token, out, err)
    except CancellationError as exc:
        print(f"cancelled: {exc.reason}", file=err)
        return EXIT_INTERRUPTED
    except AllFailedError as exc:
        print(str(exc), file=err)
        for failure in exc.failures:
            print(f"  {failure}", file=err)
        return EXIT_RUN_FAILED
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows
            pass
    return EXIT_OK


def run_cli(
    args: argparse.Namespace,
    *,
    clients: ProviderClients | None = None,
    out: TextIO | None = None,
    err: TextIO | None = None,
) -> int:
    out = out or sys.stdout
    err = err or sys.stderr
    logging.basicConfig(level=getattr(logging, args.log_level, logging.WARNING))
    try:
        if args.env is not None:
            load_env_file(args.env)
        request = prepare_request(args)
        if clients is None:
            clients = ProviderClients.mock() if args.dry_run else ProviderClients.from_environment()
    except ConfigError as exc:
        print(f"config error: {exc}", file=err)
        return EXIT_CONFIG_ERROR

    event_logger = JsonlLogger(args.metrics) if args.metrics is not None else None
    orchestrator = build_orchestrator(clients, event_logger)
    try:
        return asyncio.run(_run_async(orchestrator, request, out, err))
    except KeyboardInterrupt:
        print("interrupted", file=err)
        return EXIT_INTERRUPTED
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("run failed")
        print(f"run failed: {exc}", file=err)
        return EXIT_RUN_FAILED
