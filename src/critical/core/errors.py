"""Exception hierarchy raised by the critical pipeline."""

from __future__ import annotations

import os
from typing import Optional, Sequence


class CriticalError(Exception):
    """Base class for every error raised by critical."""


class ConfigError(CriticalError, ValueError):
    """Options failed validation. Carries the first failure message."""

    def __init__(self, message: str) -> None:
        super().__init__(f"ConfigError: {message}")
        self.detail = message


class AssetNotFoundError(CriticalError, FileNotFoundError):
    """A referenced asset could not be located against any candidate base."""

    def __init__(
        self,
        file: str = "",
        paths: Sequence[str] = (),
        candidates: Sequence[str] = (),
    ) -> None:
        self.file = file
        self.paths = list(paths)
        self.candidates = list(candidates)
        self.cwd = os.getcwd()
        searched = ", ".join(self.paths) if self.paths else "-"
        message = (
            f"File not found: {file}\n"
            f"Current working directory: {self.cwd}\n"
            f"Searched in: {searched}"
        )
        super().__init__(message)

    def __str__(self) -> str:
        return self.args[0]


class NoCssError(CriticalError):
    def __init__(self) -> None:
        super().__init__("No stylesheets found in document and no css was specified in the options")


class FetchError(CriticalError):
    """A remote resource answered with a status that is not tolerated, or the transport failed."""

    def __init__(self, url: str, status: Optional[int] = None, reason: str = "") -> None:
        self.url = url
        self.status = status
        self.reason = reason
        if status is not None:
            message = f"Request to {url} failed with status {status}"
        else:
            message = f"Request to {url} failed: {reason or 'transport error'}"
        super().__init__(message)


class CssSyntaxError(CriticalError, ValueError):
    def __init__(self, source: str, line: int, column: int, message: str) -> None:
        self.source = source
        self.line = line
        self.column = column
        super().__init__(f"{source}:{line}:{column}: {message}")


class RendererTimeoutError(CriticalError, TimeoutError):
    """A single viewport render exceeded its timeout."""

    def __init__(self, width: int, height: int, timeout_ms: int) -> None:
        self.width = width
        self.height = height
        self.timeout_ms = timeout_ms
        super().__init__(f"Rendering {width}x{height} timed out after {timeout_ms}ms")


class PageUnloadedError(CriticalError):
    """The page went away while the renderer was still evaluating it."""

    MESSAGE = "PAGE_UNLOADED_DURING_EXECUTION: Critical css generation script could not be executed."

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(self.MESSAGE if not detail else f"{self.MESSAGE} ({detail})")
