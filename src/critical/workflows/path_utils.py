"""Path and URL algebra shared by the document loader and stylesheet resolver.

Local references use filesystem semantics (``os.path``), remote references use
RFC 3986 URL merging (``urllib.parse``). Virtual paths, the document-root
relative paths used for rebasing, are always ``/`` separated.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional, Sequence, Union
from urllib.parse import SplitResult, urljoin, urlsplit, urlunsplit

from ..core.errors import AssetNotFoundError

if TYPE_CHECKING:  # pragma: no cover
    from .asset_fetch import AssetFetcher

logger = logging.getLogger(__name__)

_REMOTE_RE = re.compile(r"(^//)|(://)")
_SCHEME_RE = re.compile(r"^\w+://")
_QUERY_RE = re.compile(r"\?.*$")
_LEADING_DOTS_RE = re.compile(r"^(\.\./)+")

Ref = Union[str, bytes]


def is_remote(href: Ref) -> bool:
    if not isinstance(href, str):
        return False
    return bool(_REMOTE_RE.search(href)) and not href.startswith("file:")


def is_absolute(href: Ref) -> bool:
    return isinstance(href, str) and os.path.isabs(href)


def is_relative(href: Ref) -> bool:
    return isinstance(href, str) and not is_remote(href) and not is_absolute(href)


def normalize_path(value: str) -> str:
    """Use forward slashes and drop a Windows drive prefix."""
    if os.sep == "/":
        return value
    return re.sub(r"^[a-zA-Z]:", "", value).replace(os.sep, "/")


def strip_query(value: str) -> str:
    return _QUERY_RE.sub("", value)


def leading_dots(hrefs: Iterable[Ref]) -> str:
    """Return the longest leading ``../`` run found across relative hrefs (``./`` when none)."""
    longest = "./"
    for href in hrefs:
        if not isinstance(href, str):
            continue
        match = _LEADING_DOTS_RE.match(href)
        if match and len(match.group(0)) > len(longest):
            longest = match.group(0)
    return longest


def url_parse(value: str = "") -> SplitResult:
    if _SCHEME_RE.match(value):
        return urlsplit(value)
    if value.startswith("//"):
        return urlsplit(f"https:{value}")
    return SplitResult("", "", value, "", "")


def fs_join(*parts: str) -> str:
    """Join like node's ``path.join``: absolute parts never reset the result."""
    kept = [part for part in parts if part]
    if not kept:
        return "."
    joined = os.path.normpath(re.sub(r"/{2,}", "/", "/".join(kept)))
    if kept[-1].endswith("/") and not joined.endswith("/"):
        joined += "/"
    return joined


def url_resolve(base: str = "", ref: str = "") -> str:
    if is_remote(base):
        return urljoin(url_parse(base).geturl(), ref)
    if is_absolute(ref):
        return ref
    return fs_join(re.sub(r"[^/]+$", "", base), ref)


def join_path(base: str, part: str) -> str:
    """Join ``part`` onto ``base``; URLs merge, local paths join without a sandbox."""
    if not part:
        return base
    if is_remote(base):
        return url_resolve(base, part)
    return fs_join(base, strip_query(part))


def relative_reference(base: str, target: str) -> str:
    """Reference that leads from the ``base`` directory to ``target``.

    ``join_path(base, relative_reference(base, target)) == target`` for targets
    that stay inside the same origin (remote) or anywhere (local).
    """
    if is_remote(base):
        base_parts = url_parse(base)
        target_parts = url_parse(target)
        if (base_parts.scheme, base_parts.netloc) != (target_parts.scheme, target_parts.netloc):
            return target
        base_dir = base_parts.path if base_parts.path.endswith("/") else posixpath.dirname(base_parts.path) + "/"
        rel = posixpath.relpath(target_parts.path or "/", base_dir or "/")
        if target_parts.path.endswith("/") and not rel.endswith("/"):
            rel += "/"
        return urlunsplit(("", "", rel, target_parts.query, target_parts.fragment))
    return os.path.relpath(target, base or ".")


def file_uri(path: str) -> str:
    if not os.path.isabs(path):
        raise ValueError("Path must be absolute to compute file uri")
    return Path(path).as_uri()


async def file_exists(href: Ref, fetcher: Optional["AssetFetcher"] = None) -> bool:
    if isinstance(href, bytes):
        return True
    if not href:
        return False
    if is_remote(href):
        if fetcher is None:
            return False
        return await fetcher.exists(href)
    return os.path.exists(href) or os.path.exists(strip_query(href))


async def resolve(href: str, search: Sequence[str] = (), fetcher: Optional["AssetFetcher"] = None) -> str:
    """Return ``href`` or the first ``join_path(base, href)`` that exists, in ``search`` order."""
    if await file_exists(href, fetcher):
        return href
    attempted: List[str] = []
    for base in search:
        candidate = join_path(base, href)
        attempted.append(candidate)
        if await file_exists(candidate, fetcher):
            return candidate
    raise AssetNotFoundError(href, search, attempted)


def find_up(name: str, cwd: str) -> Optional[str]:
    """Walk up from ``cwd`` looking for a directory called ``name``."""
    if not name:
        return None
    current = os.path.abspath(cwd)
    while True:
        candidate = os.path.join(current, name)
        if os.path.isdir(candidate):
            return candidate
        parent = os.path.dirname(current)
        if parent == current:
            return None
        current = parent
