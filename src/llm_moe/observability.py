"""Structured run events (draft completion, DeepConf summaries, arbiter switches)."""
from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime, timezone
import json
from pathlib import Path
from threading import Lock
from typing import Any, Protocol
import uuid

PathLike = str | Path


class EventLogger(Protocol):
    """Protocol for structured event loggers."""

    def emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        """Persist ``record`` for ``event_type``."""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JsonlLogger:
    """1 実行分のイベントを JSONL に追記する。

    各行には ``event`` / ``run_id`` / ``ts`` を付与するため、複数回の実行を
    同じファイルに書いても実行単位で集計できる。
    """

    def __init__(
        self,
        path: PathLike,
        *,
        run_id: str | None = None,
        clock: Callable[[], str] = _utc_now,
    ) -> None:
        self._path = Path(path)
        self._run_id = run_id or uuid.uuid4().hex
        self._clock = clock
        self._lock = Lock()

    @property
    def run_id(self) -> str:
        return self._run_id

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, event_type: str, record: Mapping[str, Any]) -> None:
        payload: dict[str, Any] = {
            "event": event_type,
            "run_id": self._run_id,
            "ts": self._clock(),
        }
        payload.update(record)
        line = json.dumps(payload, ensure_ascii=False, default=str)

        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")


__all__ = ["EventLogger", "JsonlLogger"]
