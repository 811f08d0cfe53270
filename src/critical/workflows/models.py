"""Value types passed between pipeline stages.

Stages never mutate these; they return updated copies via ``dataclasses.replace``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple, Union
from urllib.parse import SplitResult

from .path_utils import is_remote, url_parse


@dataclass(frozen=True)
class LocalAsset:
    path: str


@dataclass(frozen=True)
class RemoteAsset:
    url: str


@dataclass(frozen=True)
class InlineAsset:
    contents: bytes


Asset = Union[LocalAsset, RemoteAsset, InlineAsset]


def asset_for(ref: Union[str, bytes, LocalAsset, RemoteAsset, InlineAsset]) -> Asset:
    """Classify a raw reference. Bytes are inline content, URLs are remote, anything else is local."""
    if isinstance(ref, (LocalAsset, RemoteAsset, InlineAsset)):
        return ref
    if isinstance(ref, (bytes, bytearray)):
        return InlineAsset(bytes(ref))
    if is_remote(ref):
        return RemoteAsset(ref)
    return LocalAsset(ref)


@dataclass(frozen=True)
class Dimension:
    width: int
    height: int


@dataclass(frozen=True)
class StylesheetRef:
    """A stylesheet discovered in a document: an href, or the bytes of an inline block."""

    value: Union[str, bytes]
    media: str = ""

    @property
    def inline(self) -> bool:
        return isinstance(self.value, bytes)


@dataclass(frozen=True)
class Document:
    source: Asset
    contents: bytes
    path: str = ""
    url: str = ""
    virtual_path: str = ""
    cwd: str = ""
    stylesheets: Tuple[StylesheetRef, ...] = ()
    css: str = ""
    render_url: str = ""

    @property
    def remote(self) -> bool:
        return isinstance(self.source, RemoteAsset)

    @property
    def hrefs(self) -> Tuple[str, ...]:
        return tuple(ref.value for ref in self.stylesheets if isinstance(ref.value, str))

    @property
    def url_parts(self) -> Optional[SplitResult]:
        return url_parse(self.url) if self.url else None

    @property
    def text(self) -> str:
        return self.contents.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class Stylesheet:
    """A fetched stylesheet with its virtual location and (rebased) contents."""

    asset: Asset
    href: str
    virtual_path: str
    contents: bytes = b""
    media: str = ""

    @property
    def remote(self) -> bool:
        return isinstance(self.asset, RemoteAsset) or is_remote(self.href)

    @property
    def text(self) -> str:
        return self.contents.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class RebaseAsset:
    """What a rebase callable receives for every ``url()`` it may rewrite."""

    url: str
    origin_url: str
    pathname: str
    absolute_path: str
    relative_path: str
    search: str = ""
    hash: str = ""

