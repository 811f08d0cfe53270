"""Locate, fetch and rebase the stylesheets of a document."""

from __future__ import annotations

import asyncio
import glob
import logging
import os
import posixpath
import re
from typing import Callable, List, Optional, Sequence, Union
from urllib.parse import SplitResult, urlunsplit

from ..core.errors import AssetNotFoundError, CssSyntaxError
from .asset_fetch import AssetFetcher
from .context import RunContext
from .critical_config import BASE_WARNING
from .css_utils import rewrite_urls
from .models import Asset, Document, InlineAsset, RebaseAsset, RemoteAsset, Stylesheet, asset_for
from .options import CriticalOptions, RebaseMapping
from .path_utils import (
    file_exists,
    find_up,
    fs_join,
    is_absolute,
    is_relative,
    is_remote,
    join_path,
    normalize_path,
    resolve,
    url_parse,
    url_resolve,
)

logger = logging.getLogger(__name__)

_URL_PARTS_RE = re.compile(r"^(?P<path>[^?#]*)(?P<search>\?[^#]*)?(?P<hash>#.*)?$")
_PROTOCOL_RE = re.compile(r"^[a-z][a-z0-9+.-]*:", re.IGNORECASE)
_GLOB_MAGIC_RE = re.compile(r"[*?[]")

RebaseMethod = Union[str, Callable[[RebaseAsset], Optional[str]]]


# ---------------------------------------------------------------------------
# Candidate search paths


async def get_asset_paths(
    document: Document,
    ref: Union[str, bytes],
    options: CriticalOptions,
    fetcher: Optional[AssetFetcher] = None,
    strict: bool = True,
) -> List[str]:
    """Ordered candidate bases for ``ref``. The order is the resolution precedence."""
    if not isinstance(ref, str):
        return []
    base = options.base
    mapping = options.rebase_mapping
    source, target = mapping.from_path, mapping.to_path
    parts = document.url_parts
    url_path = parts.path if parts is not None else ""
    doc_url = document.url
    doc_path = document.path

    normalized = os.path.normpath(ref)
    segments = normalized.split(os.sep)
    hops = sum(1 for segment in segments if segment == "..")
    first = next((segment for segment in segments if segment and segment != ".."), "")
    mapped_asset_paths = [join_path(base, path) for path in options.asset_paths] if base else []

    candidates = [
        base,
        base and is_relative(base) and fs_join(os.getcwd(), base),
        doc_url,
        url_path and url_resolve(parts.geturl(), posixpath.dirname(url_path)),
        url_path
        and not posixpath.dirname(url_path).endswith("/")
        and url_resolve(parts.geturl(), f"{posixpath.dirname(url_path)}/"),
        doc_url and url_resolve(doc_url, ref),
        doc_path and os.path.dirname(doc_path),
        *options.asset_paths,
        *mapped_asset_paths,
        target,
        source,
        base and doc_path and fs_join(base, os.path.dirname(doc_path)),
        base and target and fs_join(base, os.path.dirname(target)),
        base and source and fs_join(base, os.path.dirname(source)),
        base and is_relative(ref) and hops and fs_join(base, *(["tmpdir"] * hops), ref),
        os.getcwd(),
    ]
    unique = list(dict.fromkeys(candidate for candidate in candidates if candidate))

    if strict:
        existing = []
        for candidate in unique:
            if await file_exists(candidate, fetcher):
                existing.append(candidate)
        unique = existing

    found = list(unique)
    for cwd in unique:
        if is_remote(cwd):
            found.append(cwd)
            continue
        up = find_up(first, cwd)
        if not up:
            continue
        up_dir = os.path.dirname(up)
        found.append(up_dir)
        if hops:
            extra = os.path.relpath(cwd, up_dir).split(os.sep)[:hops]
            found.append(os.path.join(up_dir, *extra))

    result = list(dict.fromkeys(found))
    logger.debug('(get_asset_paths) Search file "%s" in: %s', ref, result)
    return result


# ---------------------------------------------------------------------------
# Virtual stylesheet location


def _remote_stylesheet_path(parts: SplitResult, doc_parts: Optional[SplitResult], filename: str = "") -> str:
    pathname = parts.path
    if filename:
        pathname = normalize_path(join_path(posixpath.dirname(pathname), posixpath.basename(filename)))
        parts = parts._replace(path=pathname)
    if doc_parts is not None and (parts.hostname, parts.port) == (doc_parts.hostname, doc_parts.port):
        return pathname
    return urlunsplit(parts)


def get_stylesheet_path(document: Document, asset: Asset, file_path: str, base: Optional[str] = None) -> str:
    """Virtual-root-relative location of a stylesheet (or its URL when it lives on another host)."""
    virtual = document.virtual_path
    if isinstance(asset, InlineAsset):
        return normalize_path(f"{virtual}.css")
    if isinstance(asset, RemoteAsset):
        return _remote_stylesheet_path(url_parse(asset.url), document.url_parts)
    if is_relative(file_path) and virtual:
        return normalize_path(join_path(posixpath.dirname(virtual), file_path))
    if base and os.path.abspath(base) in os.path.abspath(file_path):
        return normalize_path("/" + os.path.relpath(os.path.abspath(file_path), os.path.abspath(base)))

    hrefs = list(document.hrefs)
    name = os.path.basename(file_path)
    same_name = next((href for href in hrefs if posixpath.basename(url_parse(href).path) == name), None)
    if same_name and is_relative(same_name) and virtual:
        return normalize_path(join_path(posixpath.dirname(virtual), same_name))
    if same_name and is_remote(same_name):
        return _remote_stylesheet_path(url_parse(same_name), document.url_parts)
    if same_name:
        return same_name

    ordered = sorted(hrefs, key=lambda href: 1 if is_remote(href) else 0)
    unsafe = ordered[0] if ordered else None
    if unsafe and is_relative(unsafe) and virtual:
        return normalize_path(
            join_path(posixpath.dirname(virtual), join_path(posixpath.dirname(unsafe), name))
        )
    if unsafe and is_remote(unsafe):
        return _remote_stylesheet_path(url_parse(unsafe), document.url_parts, name)

    logger.warning(BASE_WARNING)
    if virtual and file_path:
        return normalize_path(join_path(posixpath.dirname(virtual), name))
    return ""


# ---------------------------------------------------------------------------
# Rebasing


def _split_url(url: str) -> tuple:
    match = _URL_PARTS_RE.match(url)
    return match.group("path"), match.group("search") or "", match.group("hash") or ""


def _is_skipped(url: str) -> bool:
    return not url or url.startswith(("data:", "#", "%23"))


def _rebase_asset(url: str, source: str) -> RebaseAsset:
    pathname, search, fragment = _split_url(url)
    if is_remote(url) or _PROTOCOL_RE.match(url):
        return RebaseAsset(url, url, pathname, url, url, search, fragment)
    source_dir = os.path.dirname(os.path.abspath(source))
    absolute = os.path.normpath(os.path.join(source_dir, pathname))
    return RebaseAsset(
        url=url,
        origin_url=url,
        pathname=pathname,
        absolute_path=normalize_path(absolute),
        relative_path=normalize_path(os.path.relpath(absolute, source_dir)),
        search=search,
        hash=fragment,
    )


def _relative_rebase(source: str, target: str) -> Callable[[str], Optional[str]]:
    source_dir = os.path.dirname(os.path.abspath(source))
    target_dir = os.path.dirname(os.path.abspath(target))

    def transform(url: str) -> Optional[str]:
        if _is_skipped(url) or url.startswith(("/", "~")) or is_remote(url) or _PROTOCOL_RE.match(url):
            return None
        pathname, search, fragment = _split_url(url)
        absolute = os.path.normpath(os.path.join(source_dir, pathname))
        return normalize_path(os.path.relpath(absolute, target_dir)) + search + fragment

    return transform


def rebase_assets(
    css: Union[str, bytes],
    source: str,
    target: str,
    *,
    method: RebaseMethod = "rebase",
    strict: bool = False,
    inlined: bool = False,
) -> str:
    """Rewrite relative ``url()`` references of ``css`` moved from ``source`` to ``target``.

    ``method`` is ``"rebase"`` for relative-path arithmetic or a callable that
    maps a ``RebaseAsset`` to the new reference. Parse errors raise under
    ``strict``; otherwise the stylesheet contributes nothing.
    """
    text = css.decode("utf-8", errors="replace") if isinstance(css, bytes) else css
    logger.debug("Rebase assets from %s to %s", source, target)
    if target and target.endswith("/"):
        target += "temp.html"
    if source and source.endswith("/"):
        source += "temp.css"
    if source and is_remote(source):
        source = url_parse(source).path

    if callable(method):
        def transform(url: str) -> Optional[str]:
            if _is_skipped(url):
                return None
            return method(_rebase_asset(url, source or ""))
    elif source and target:
        transform = _relative_rebase(source, target)
    else:
        return text

    label = "Inlined stylesheet" if inlined else (source or "<css>")
    try:
        return rewrite_urls(text, transform, source=label, strict=True)
    except CssSyntaxError as exc:
        if strict:
            raise
        logger.debug("CSS parse error: %s", exc)
        return ""


def _path_prefix_method(prefix: str) -> Callable[[RebaseAsset], Optional[str]]:
    def method(asset: RebaseAsset) -> Optional[str]:
        if is_remote(asset.url) or asset.url.startswith("/"):
            return None
        return f"{prefix.rstrip('/')}/{asset.absolute_path.lstrip('/')}{asset.search}{asset.hash}"

    return method


def _absolute_method(asset: RebaseAsset) -> Optional[str]:
    if is_remote(asset.url) or asset.url.startswith("/"):
        return None
    return normalize_path(asset.absolute_path) + asset.search + asset.hash


def _remote_method(target: str) -> Callable[[RebaseAsset], Optional[str]]:
    def method(asset: RebaseAsset) -> Optional[str]:
        if is_remote(asset.origin_url):
            return asset.origin_url
        return url_resolve(target, asset.origin_url)

    return method


# ---------------------------------------------------------------------------
# Fetch + rebase


async def _read(asset: Asset, fetcher: AssetFetcher) -> bytes:
    if isinstance(asset, InlineAsset):
        return asset.contents
    if isinstance(asset, RemoteAsset):
        return await fetcher.fetch(asset.url)
    return await fetcher.read(asset.path)


async def get_stylesheet(
    document: Document,
    ref: Union[str, bytes],
    options: CriticalOptions,
    ctx: RunContext,
    media: str = "",
) -> Optional[Stylesheet]:
    """Fetch one stylesheet and rebase its assets relative to the document.

    Returns ``None`` when a remote stylesheet cannot be located outside strict mode.
    """
    fetcher = ctx.fetcher
    original = ref
    location: Union[str, bytes] = ref

    if not await file_exists(ref, fetcher):
        search = await get_asset_paths(document, ref, options, fetcher)
        try:
            location = await resolve(ref, search, fetcher)
        except AssetNotFoundError:
            if not is_remote(ref) or options.strict:
                raise
            logger.debug("Skipping unreachable stylesheet %s", ref)
            return None

    if isinstance(location, str) and not is_remote(location) and options.css:
        location = os.path.abspath(location)

    asset = asset_for(location)
    contents = await _read(asset, fetcher)
    text = contents.decode("utf-8", errors="replace")
    if media:
        text = f"@media {media} {{ {text} }}"

    if isinstance(original, str) and not is_remote(original) and not options.css:
        file_path = original
    else:
        file_path = location if isinstance(location, str) else ""
    stylepath = get_stylesheet_path(document, asset, file_path, options.base)
    logger.debug("(get_stylesheet) Virtual Stylesheet Path: %s", stylepath)

    rebase = options.rebase
    mapping = options.rebase_mapping
    inlined = isinstance(original, bytes)
    common = {"strict": options.strict, "inlined": inlined}
    if options.path_prefix and isinstance(rebase, RebaseMapping) and rebase == RebaseMapping():
        rebase = _path_prefix_method(options.path_prefix)

    if rebase is False:
        rebased = text
    elif mapping.from_path and mapping.to_path:
        rebased = rebase_assets(text, mapping.from_path, mapping.to_path, **common)
    elif callable(rebase):
        rebased = rebase_assets(text, stylepath, document.virtual_path, method=rebase, **common)
    elif is_remote(mapping.to_path or stylepath):
        target = mapping.to_path or stylepath
        rebased = rebase_assets(
            text, mapping.from_path or stylepath, target, method=_remote_method(target), **common
        )
    elif document.virtual_path:
        rebased = rebase_assets(
            text, mapping.from_path or stylepath, mapping.to_path or document.virtual_path, **common
        )
    elif document.remote:
        rebased = rebase_assets(
            text, mapping.from_path or stylepath, mapping.to_path or document.url_parts.path, **common
        )
    elif is_absolute(stylepath):
        rebased = rebase_assets(
            text, mapping.from_path or stylepath, mapping.to_path or "/index.html", method=_absolute_method, **common
        )
    else:
        logger.warning('Not rebasing assets for %s. Use "rebase" option', original if isinstance(original, str) else "inline styles")
        rebased = text

    href = original if isinstance(original, str) else ""
    return Stylesheet(asset=asset, href=href, virtual_path=stylepath, contents=rebased.encode("utf-8"), media=media)


def glob_css(patterns: Sequence[str], base: Optional[str] = None) -> List[str]:
    """Expand glob patterns (relative to ``base`` and the cwd); plain paths pass through."""
    files: List[str] = []
    for pattern in patterns:
        if _GLOB_MAGIC_RE.search(pattern):
            matched: List[str] = []
            if base and not is_remote(base):
                matched.extend(sorted(glob.glob(os.path.join(base, pattern))))
            matched.extend(sorted(glob.glob(pattern)))
            files.extend(dict.fromkeys(matched))
        else:
            files.append(pattern)
    return files


async def get_css(document: Document, options: CriticalOptions, ctx: RunContext) -> str:
    """Concatenate every rebased stylesheet in discovery order."""
    if options.css:
        files = glob_css(options.css, options.base)
        sheets = await asyncio.gather(*(get_stylesheet(document, file, options, ctx) for file in files))
        logger.debug("(get_css) css option set: %s", files)
    else:
        sheets = await asyncio.gather(
            *(get_stylesheet(document, ref.value, options, ctx, media=ref.media) for ref in document.stylesheets)
        )
        logger.debug("(get_css) extract from document: %s", list(document.hrefs))
    return os.linesep.join(sheet.text for sheet in sheets if sheet is not None)
