"""Top-level entry point: ``generate`` (async) and ``generate_sync``."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import AsyncExitStack
from typing import Any, Mapping, Optional

from ..core.errors import NoCssError
from .assembler import CriticalResult, assemble
from .context import RunContext
from .document import get_document, get_document_from_source
from .options import CriticalOptions, get_options
from .orchestrator import render_dimensions
from .renderer import PlaywrightRenderer, Renderer

logger = logging.getLogger(__name__)


def _output_path(path: str, base: Optional[str]) -> str:
    if os.path.isabs(path) or not base:
        return os.path.abspath(path)
    return os.path.abspath(os.path.join(base, path))


def write_targets(result: CriticalResult, options: CriticalOptions) -> None:
    """Write ``target.css`` / ``target.html`` / ``target.uncritical``, creating parent directories."""
    outputs = (
        (options.target.css, lambda: result.css),
        (options.target.html, lambda: result.html),
        (options.target.uncritical, lambda: result.uncritical),
    )
    for target, content in outputs:
        if not target:
            continue
        path = _output_path(target, options.base)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(content())
        logger.debug("Wrote %s", path)


async def generate(
    options: Optional[Mapping[str, Any]] = None,
    *,
    renderer: Optional[Renderer] = None,
    **kwargs: Any,
) -> CriticalResult:
    """Compute the critical CSS for one document.

    Options come as a mapping and/or keyword arguments (snake_case or the
    camelCase names). ``renderer`` replaces the default Playwright renderer.
    Temp files and the HTTP session belong to this call and are released on
    every exit path.
    """
    opts = get_options(options, **kwargs)
    async with AsyncExitStack() as stack:
        ctx = await stack.enter_async_context(RunContext.from_options(opts))
        if opts.src is not None:
            document = await get_document(opts.src, opts, ctx)
        else:
            document = await get_document_from_source(opts.html, opts, ctx)

        if not document.css.strip():
            if opts.strict:
                raise NoCssError()
            result = CriticalResult(css="", html=document.text)
        else:
            if renderer is None:
                renderer = await stack.enter_async_context(PlaywrightRenderer())
            per_dimension = await render_dimensions(document, opts, renderer)
            if per_dimension is None:
                result = CriticalResult(css="", html=document.text)
            else:
                result = await assemble(document, per_dimension, opts, ctx)

    write_targets(result, opts)
    return result


def generate_sync(options: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> CriticalResult:
    """Blocking wrapper around ``generate`` for callers without an event loop."""
    return asyncio.run(generate(options, **kwargs))
