from __future__ import annotations

import argparse
from collections.abc import Sequence
from pathlib import Path

from .utils import EXIT_CONFIG_ERROR

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        "llm-moe", description="複数の専門家エージェントで下書きを作り、アービターが統合する"
    )
    parser.add_argument("--config", required=True, type=Path, help="実行設定 YAML のパス")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--prompt", help="単発プロンプト文字列")
    source.add_argument("--prompt-file", type=Path, help="テキストファイルからプロンプトを読み込む")
    parser.add_argument(
        "--image",
        action="append",
        type=Path,
        default=[],
        help="全エージェントに渡す画像 (繰り返し指定可)",
    )
    parser.add_argument("--env", type=Path, help="指定した .env ファイルを読み込む")
    parser.add_argument("--metrics", type=Path, help="構造化イベントを追記する JSONL ファイル")
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default="WARNING",
        type=str.upper,
        help="ログレベル",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="API を呼ばずモックプロバイダで実行する",
    )
    return parser


def parse_cli_arguments(
    argv: Sequence[str] | None,
) -> tuple[argparse.Namespace | None, int | None]:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as exc:  # argparse は内部で exit(2) を呼ぶ
        code = exc.code if isinstance(exc.code, int) else EXIT_CONFIG_ERROR
        return None, code
    return args, None


__all__ = ["LOG_LEVELS", "build_parser", "parse_cli_arguments"]
