"""Fan one critical CSS request out over every viewport dimension."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import AsyncIterator, List, Optional

from ..core.errors import PageUnloadedError, RendererTimeoutError
from .asset_fetch import token
from .models import Dimension, Document
from .options import CriticalOptions
from .renderer import Renderer, RenderRequest

logger = logging.getLogger(__name__)


def build_request(document: Document, options: CriticalOptions, dimension: Dimension) -> RenderRequest:
    render = options.render
    headers = dict(render.custom_page_headers)
    if options.user and options.password:
        headers["Authorization"] = f"Basic {token(options.user, options.password)}"
    return RenderRequest(
        url=document.render_url,
        css=document.css,
        width=dimension.width,
        height=dimension.height,
        force_include=render.force_include,
        timeout=render.timeout,
        max_embedded_base64_length=render.max_embedded_base64_length,
        keep_larger_media_queries=render.keep_larger_media_queries,
        user_agent=options.user_agent,
        headers=headers,
        extra=dict(render.extra),
    )


async def render_one(renderer: Renderer, request: RenderRequest) -> str:
    """Run a single render under its own timeout."""
    logger.debug(
        "Call renderer with: url=%s width=%s height=%s timeout=%s force_include=%s",
        request.url,
        request.width,
        request.height,
        request.timeout,
        list(request.force_include),
    )
    try:
        return await asyncio.wait_for(renderer.render(request), timeout=request.timeout / 1000)
    except RendererTimeoutError:
        raise
    except asyncio.TimeoutError as exc:
        raise RendererTimeoutError(request.width, request.height, request.timeout) from exc


@contextlib.asynccontextmanager
async def _limit(semaphore: Optional[asyncio.Semaphore]) -> AsyncIterator[None]:
    if semaphore is None:
        yield
        return
    async with semaphore:
        yield


async def render_dimensions(
    document: Document,
    options: CriticalOptions,
    renderer: Renderer,
) -> Optional[List[str]]:
    """Critical CSS per dimension, positioned in ascending width order.

    Returns ``None`` when the renderer reports that the page unloaded: the
    whole document then degrades to an empty result. A timeout or any other
    renderer error is raised once every sibling render has settled.
    """
    requests = [build_request(document, options, dimension) for dimension in options.dimensions]
    semaphore = asyncio.Semaphore(options.concurrency) if options.concurrency else None

    async def run(request: RenderRequest) -> str:
        async with _limit(semaphore):
            return await render_one(renderer, request)

    tasks = [asyncio.ensure_future(run(request)) for request in requests]
    try:
        pending = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if isinstance(task.exception(), PageUnloadedError):
                    logger.warning(PageUnloadedError.MESSAGE)
                    return None
        for task in tasks:
            error = task.exception()
            if error is not None:
                raise error
        return [task.result() for task in tasks]
    finally:
        unfinished = [task for task in tasks if not task.done()]
        for task in unfinished:
            task.cancel()
        if unfinished:
            await asyncio.gather(*unfinished, return_exceptions=True)
