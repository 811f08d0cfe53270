"""Core schema helpers for critical."""

from .keys import *  # noqa: F401,F403 re-export stable keys
from .errors import (  # noqa: F401
    AssetNotFoundError,
    ConfigError,
    CriticalError,
    CssSyntaxError,
    FetchError,
    NoCssError,
    PageUnloadedError,
    RendererTimeoutError,
)

__all__ = [name for name in globals() if name.startswith("K_")] + [
    "AssetNotFoundError",
    "ConfigError",
    "CriticalError",
    "CssSyntaxError",
    "FetchError",
    "NoCssError",
    "PageUnloadedError",
    "RendererTimeoutError",
]
