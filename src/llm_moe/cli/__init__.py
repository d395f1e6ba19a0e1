from __future__ import annotations

from collections.abc import Sequence
import sys

from .args import build_parser, parse_cli_arguments
from .runner import run_cli
from .utils import EXIT_CONFIG_ERROR, EXIT_INTERRUPTED, EXIT_OK, EXIT_RUN_FAILED

__all__ = [
    "EXIT_CONFIG_ERROR",
    "EXIT_INTERRUPTED",
    "EXIT_OK",
    "EXIT_RUN_FAILED",
    "build_parser",
    "main",
    "run_cli",
]


def main(argv: Sequence[str] | None = None) -> int:
    args, exit_code = parse_cli_arguments(argv)
    if args is None:
        return exit_code if exit_code is not None else EXIT_CONFIG_ERROR
    return run_cli(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
