from __future__ import annotations

import base64
import logging
import mimetypes
from pathlib import Path

from dotenv import load_dotenv

from ..errors import ConfigError
from ..provider_spi import ImageInput

LOGGER = logging.getLogger("llm_moe.cli")

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

__all__ = [
    "EXIT_OK",
    "EXIT_RUN_FAILED",
    "EXIT_CONFIG_ERROR",
    "EXIT_INTERRUPTED",
    "load_env_file",
    "read_prompt",
    "read_image",
]


def load_env_file(path: Path) -> None:
    if not path.exists():
        raise ConfigError(f".env file not found: {path}")
    load_dotenv(path, override=False)
    LOGGER.info("loaded .env file: %s", path)


def read_prompt(prompt: str | None, prompt_file: Path | None) -> str:
    if prompt_file is not None:
        try:
            prompt = prompt_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"cannot read prompt file {prompt_file}: {exc}") from exc
    text = (prompt or "").strip()
    if not text:
        raise ConfigError("prompt must be a non-empty string")
    return text


def read_image(path: Path) -> ImageInput:
    mime_type, _ = mimetypes.guess_type(path.name)
    if mime_type is None or not mime_type.startswith("image/"):
        raise ConfigError(f"unsupported image type: {path}")
    try:
        payload = path.read_bytes()
    except OSError as exc:
        raise ConfigError(f"cannot read image {path}: {exc}") from exc
    return ImageInput(mime_type=mime_type, data=base64.b64encode(payload).decode("ascii"))
