"""pytest グローバル設定: src レイアウトの解決と共通フィクスチャ。"""

from __future__ import annotations

from pathlib import Path
import sys

import pytest

_REPO_ROOT = Path(__file__).resolve().parent.parent
for _path in (_REPO_ROOT, _REPO_ROOT / "src"):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

from llm_moe.retry import RetryPolicy  # noqa: E402
from tests.helpers.fakes import CapturingLogger  # noqa: E402


@pytest.fixture
def no_retry() -> RetryPolicy:
    return RetryPolicy(max_retries=0, backoff_s=0.0)


@pytest.fixture
def capturing_logger() -> CapturingLogger:
    return CapturingLogger()


@pytest.fixture(autouse=True)
def _clear_provider_keys(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("GEMINI_API_KEY", "OPENAI_API_KEY", "OPENROUTER_API_KEY"):
        monkeypatch.delenv(name, raising=False)
