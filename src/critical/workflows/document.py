"""Load the HTML document and give it a location under the virtual root."""

from __future__ import annotations

import logging
import os
import posixpath
import re
import uuid
from dataclasses import replace
from typing import Optional, Union

from ..core.errors import AssetNotFoundError
from .asset_fetch import AssetFetcher
from .context import RunContext
from .critical_config import BASE_WARNING, FOLDER_WARNING
from .html_utils import get_stylesheet_refs
from .models import Asset, Document, InlineAsset, LocalAsset, RemoteAsset, asset_for
from .options import CriticalOptions
from .path_utils import (
    file_uri,
    is_absolute,
    is_relative,
    leading_dots,
    normalize_path,
    resolve,
    strip_query,
)
from .stylesheets import get_asset_paths, get_css

logger = logging.getLogger(__name__)

_HEAD_RE = re.compile(r"(<head(?:\s[^>]*)?>)", re.IGNORECASE)


async def load_source(src: Union[str, Asset], options: CriticalOptions, fetcher: AssetFetcher) -> Document:
    """Read the document bytes for ``src`` (a path, a URL or an already classified asset)."""
    asset = asset_for(src)

    if isinstance(asset, LocalAsset) and not os.path.exists(asset.path):
        bases = [base for base in (options.base, options.folder) if base]
        asset = LocalAsset(await resolve(asset.path, bases))

    if isinstance(asset, RemoteAsset):
        body, final_url = await fetcher.fetch_document(asset.url)
        return Document(source=RemoteAsset(final_url), contents=body, url=final_url)
    if isinstance(asset, InlineAsset):
        return Document(source=asset, contents=asset.contents)
    return Document(source=asset, contents=await fetcher.read(asset.path), path=asset.path)


def _relative_to_cwd(path: str) -> str:
    return normalize_path("/" + os.path.relpath(os.path.abspath(path), os.getcwd()))


async def get_document_path(
    document: Document,
    options: CriticalOptions,
    fetcher: Optional[AssetFetcher] = None,
) -> str:
    """Path of a located document relative to the virtual root ('' when it has none)."""
    if document.remote:
        pathname = document.url_parts.path or "/"
        if pathname.endswith("/"):
            pathname += "index.html"
        return pathname

    if not document.path:
        return ""

    if options.base:
        return normalize_path("/" + os.path.relpath(os.path.abspath(document.path), os.path.abspath(options.base)))

    relative_refs = [href for href in document.hrefs if is_relative(href)]
    absolute_refs = [href for href in document.hrefs if is_absolute(href)]

    if not relative_refs and not absolute_refs:
        logger.warning(BASE_WARNING)
        return _relative_to_cwd(document.path)

    if not relative_refs:
        ref = absolute_refs[0]
        paths = await get_asset_paths(document, ref, options, fetcher)
        try:
            found = normalize_path(await resolve(ref, paths, fetcher))
        except AssetNotFoundError:
            logger.warning(BASE_WARNING)
            return _relative_to_cwd(document.path)
        root = found[: -len(ref)] if found.endswith(ref) else found.replace(ref, "")
        return normalize_path("/" + os.path.relpath(os.path.abspath(document.path), os.path.abspath(root or "/")))

    root = os.path.abspath(os.path.join(os.path.dirname(document.path), leading_dots(relative_refs)))
    return normalize_path("/" + os.path.relpath(os.path.abspath(document.path), root))


def get_source_path(document: Document, options: CriticalOptions) -> str:
    """Synthetic virtual path for raw HTML: rebase target, then ``folder``, then the ``../`` depth."""
    target = options.rebase_mapping.to_path
    if target:
        return target
    if options.folder:
        folder = normalize_path(options.folder).strip("/")
        if folder.endswith((".html", ".htm")):
            return "/" + folder
        return posixpath.join("/", folder, "index.html")

    relative_refs = [href for href in document.hrefs if is_relative(href)]
    if not relative_refs:
        logger.warning(FOLDER_WARNING)
        return "/index.html"
    depth = leading_dots(relative_refs).count("../")
    return "/" + "/".join(["sub"] * depth + ["index.html"])


def _document_cwd(document: Document, options: CriticalOptions) -> str:
    if options.base:
        return options.base
    if isinstance(document.source, LocalAsset) and document.virtual_path:
        path = normalize_path(document.path)
        if path.endswith(document.virtual_path):
            return path[: -len(document.virtual_path)] or "/"
        return path.replace(document.virtual_path, "")
    return os.getcwd()


async def prepare_render_data(document: Document, ctx: RunContext) -> str:
    """Write the document and its combined css to a temp dir and return the ``file://`` URL.

    The directory is nested as deep as the relative stylesheet hrefs climb, so
    every ``../`` link still points inside it. The first relative stylesheet
    gets the combined css, the rest are empty files. Hrefs that would still
    land outside the temp dir are skipped.
    """
    stylesheets = [posixpath.normpath(strip_query(href)) for href in document.hrefs if is_relative(href)]
    root = os.path.realpath(ctx.temp.mkdtemp())
    subfolders = leading_dots(stylesheets).replace("../", "sub/")
    directory = os.path.normpath(os.path.join(root, subfolders))
    filename = os.path.join(directory, f"{uuid.uuid4().hex}.html")

    injected = _HEAD_RE.sub(lambda match: f"{match.group(1)}<style>{document.css}</style>", document.text)
    await ctx.temp.save(filename, injected)

    targets = []
    for href in stylesheets:
        target = os.path.realpath(os.path.join(directory, href))
        if os.path.commonpath([root, target]) != root or target in (root, directory):
            logger.debug("Not writing %s outside of %s", href, root)
            continue
        if target not in targets:
            targets.append(target)

    if targets:
        first, *rest = targets
        await ctx.temp.save(first, document.css)
        for dummy in rest:
            await ctx.temp.save(dummy, "")

    return file_uri(filename)


async def _finish(document: Document, virtual_path: str, options: CriticalOptions, ctx: RunContext) -> Document:
    document = replace(document, virtual_path=virtual_path)
    document = replace(document, cwd=_document_cwd(document, options))
    logger.debug(
        "(get_document) Result: path=%s url=%s remote=%s virtual_path=%s stylesheets=%s cwd=%s",
        document.path,
        document.url,
        document.remote,
        document.virtual_path,
        list(document.hrefs),
        document.cwd,
    )
    document = replace(document, css=await get_css(document, options, ctx))
    return replace(document, render_url=await prepare_render_data(document, ctx))


def _with_stylesheets(document: Document, options: CriticalOptions) -> Document:
    refs = get_stylesheet_refs(
        document.contents,
        ignore_inlined_styles=options.ignore_inlined_styles,
        unique=True,
    )
    return replace(document, stylesheets=tuple(refs))


async def get_document(src: Union[str, Asset], options: CriticalOptions, ctx: RunContext) -> Document:
    """Load a document from a path or URL, locate it and attach its rebased css."""
    document = _with_stylesheets(await load_source(src, options, ctx.fetcher), options)
    target = options.rebase_mapping.to_path
    virtual_path = target or await get_document_path(document, options, ctx.fetcher)
    return await _finish(document, virtual_path, options, ctx)


async def get_document_from_source(html: Union[str, bytes], options: CriticalOptions, ctx: RunContext) -> Document:
    """Build a document from raw HTML that has no location of its own."""
    contents = html.encode("utf-8") if isinstance(html, str) else html
    target = options.rebase_mapping.to_path or ""
    document = _with_stylesheets(Document(source=InlineAsset(contents), contents=contents, path=target), options)
    return await _finish(document, get_source_path(document, options), options, ctx)

