"""Per-call resources: the HTTP fetcher and the temp files handed to the renderer."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Any, List, Union

from .asset_fetch import AssetFetcher

logger = logging.getLogger(__name__)


class TempRegistry:
    """Tracks temp files and directories owned by exactly one ``generate`` call."""

    def __init__(self, prefix: str = "critical-") -> None:
        self.prefix = prefix
        self.files: List[str] = []
        self.dirs: List[str] = []

    def mkdtemp(self) -> str:
        path = tempfile.mkdtemp(prefix=self.prefix)
        self.dirs.append(path)
        return path

    def register(self, path: str) -> str:
        self.files.append(path)
        return path

    def write(self, path: str, data: Union[str, bytes]) -> str:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        payload = data.encode("utf-8") if isinstance(data, str) else data
        with open(path, "wb") as fh:
            fh.write(payload)
        return self.register(path)

    async def save(self, path: str, data: Union[str, bytes]) -> str:
        return await asyncio.to_thread(self.write, path, data)

    def cleanup(self) -> None:
        for path in reversed(self.files):
            try:
                os.unlink(path)
            except FileNotFoundError:
                logger.debug("%s was already deleted", path)
        for path in reversed(self.dirs):
            shutil.rmtree(path, ignore_errors=True)
        self.files.clear()
        self.dirs.clear()


@dataclass
class RunContext:
    """Threaded through every stage of one ``generate`` call and released on every exit path."""

    fetcher: AssetFetcher
    temp: TempRegistry = field(default_factory=TempRegistry)

    @classmethod
    def from_options(cls, options: Any) -> "RunContext":
        return cls(fetcher=AssetFetcher.from_options(options))

    async def __aenter__(self) -> "RunContext":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        try:
            await self.fetcher.close()
        finally:
            self.temp.cleanup()
