"""Defaults and environment knobs for critical CSS generation."""

from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv(override=False)


def _env_int(name: str, default: int = 0) -> int:
    try:
        raw = os.getenv(name, "")
        return int(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: str = "0") -> bool:
    raw = os.getenv(name, default)
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


DEFAULT_WIDTH = 1300
DEFAULT_HEIGHT = 900
DEFAULT_TIMEOUT_MS = _env_int("CRITICAL_RENDER_TIMEOUT", 30000)
DEFAULT_MAX_IMAGE_FILE_SIZE = _env_int("CRITICAL_MAX_IMAGE_FILE_SIZE", 10240)
# 0 means unbounded: every dimension renders at once.
DEFAULT_CONCURRENCY = _env_int("CRITICAL_CONCURRENCY", 0)
DEFAULT_USER_AGENT = os.getenv(
    "CRITICAL_USER_AGENT",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36",
)
PLAYWRIGHT_HEADED = _env_bool("CRITICAL_PLAYWRIGHT_HEADED", "0")

BASE_WARNING = "Warning: Missing base path. Consider 'base' option. https://goo.gl/PwvFVb"
FOLDER_WARNING = (
    "Warning: Missing base path for html source. Consider 'folder' option. "
    "Assuming the document lives at the virtual root."
)

# Statuses that turn a stylesheet fetch into empty content instead of an error.
TOLERATED_STATUS_CODES = frozenset({403, 404})

INLINE_STRATEGIES = ("media", "swap", "body")

INLINE_IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".avif", ".ico")

RENDER_FORBIDDEN_KEYS = ("url", "css", "width", "height")
