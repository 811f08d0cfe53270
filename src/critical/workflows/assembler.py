"""Turn the per-viewport renderer output into the final result."""

from __future__ import annotations

import inspect
import logging
import os
import posixpath
from dataclasses import dataclass
from functools import cached_property
from typing import Any, List, Sequence, Union

from .context import RunContext
from .css_utils import apply_ignore, combine, extract_uncritical, get_assets, inline_images, minify, prettify
from .html_utils import inline_critical
from .models import Document
from .options import CriticalOptions
from .path_utils import is_remote, normalize_path
from .stylesheets import get_asset_paths

logger = logging.getLogger(__name__)


@dataclass
class CriticalResult:
    css: str
    html: str
    source_css: str = ""

    @cached_property
    def uncritical(self) -> str:
        """Rules of the full stylesheet that did not make it into ``css``. Computed on first access."""
        if not self.source_css:
            return ""
        return extract_uncritical(self.source_css, self.css)


async def image_search_paths(document: Document, css: str, options: CriticalOptions, ctx: RunContext) -> List[str]:
    """Directories (and origins) the image inliner looks in, most specific first."""
    refs = [*get_assets(css), *document.hrefs]
    found: dict = {}
    for directory in dict.fromkeys(posixpath.dirname(ref) for ref in refs):
        for path in await get_asset_paths(document, directory, options, ctx.fetcher, strict=False):
            found.setdefault(path, None)
    cwd = os.getcwd()
    filtered = [
        path
        for path in found
        if is_remote(path) or cwd in path or (options.base and options.base in path)
    ]
    search = list(dict.fromkeys([*filtered, *options.asset_paths]))
    logger.debug("Inline images search paths: %s", search)
    return search


async def post_process(css: str, document: Document, options: CriticalOptions, ctx: RunContext) -> str:
    """ignore filter, then custom steps, then image inlining, then minify or prettify."""
    if options.ignore:
        css = apply_ignore(css, options.ignore)
    for step in options.postprocess:
        processed = step(css)
        css = await processed if inspect.isawaitable(processed) else processed
    if options.inline_images:
        search = await image_search_paths(document, css, options, ctx)
        css = await inline_images(css, search, options.max_image_file_size, ctx.fetcher)
    return minify(css) if options.minify else prettify(css)


def _as_hrefs(value: Any) -> Union[None, bool, Sequence[str]]:
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        return (value,)
    return tuple(value)


async def choose_replacements(document: Document, result: CriticalResult, options: CriticalOptions) -> Any:
    """Which hrefs replace the document's stylesheet links (``None`` keeps them, deferred)."""
    inline = options.inline
    replace_sheets = inline.replace_stylesheets
    extract = options.extract or inline.extract

    if callable(replace_sheets):
        value = replace_sheets(document, result.uncritical)
        if inspect.isawaitable(value):
            value = await value
        return _as_hrefs(value)
    if replace_sheets is not None:
        return replace_sheets
    if extract and not result.uncritical.strip():
        return ()
    if options.target.uncritical:
        target = os.path.abspath(os.path.join(options.base or os.getcwd(), options.target.uncritical))
        href = normalize_path(os.path.relpath(target, os.path.abspath(document.cwd or os.getcwd())))
        if not href.startswith("../"):
            return (f"/{href}",)
    return None


async def assemble(
    document: Document,
    css_per_dimension: Sequence[str],
    options: CriticalOptions,
    ctx: RunContext,
) -> CriticalResult:
    """Combine, post-process and optionally inline the critical CSS."""
    css = await post_process(combine(list(css_per_dimension)), document, options, ctx)
    result = CriticalResult(css=css, html=document.text, source_css=document.css)
    if options.inline is not None:
        replacements = await choose_replacements(document, result, options)
        result.html = inline_critical(
            document.contents,
            css,
            strategy=options.inline.strategy,
            replace_stylesheets=replacements,
            extract=options.extract or options.inline.extract,
        )
    return result
