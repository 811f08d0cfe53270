"""HTML helpers: stylesheet discovery and critical CSS inlining."""

from __future__ import annotations

import base64
import logging
import re
from typing import Iterable, List, Optional, Sequence, Tuple, Union
from urllib.parse import unquote_to_bytes

from bs4 import BeautifulSoup, Tag  # type: ignore
from charset_normalizer import from_bytes

from .models import StylesheetRef

logger = logging.getLogger(__name__)

_IMPORT_RE = re.compile(
    r"""@import\s+(?:url\(\s*(['"]?)(?P<url>[^'")]+)\1\s*\)|(['"])(?P<str>[^'"]+)\3)\s*(?P<media>[^;]*);""",
    re.IGNORECASE,
)
_TRIVIAL_MEDIA = {"all", "print", "screen"}


def decode_html(body: Union[str, bytes]) -> str:
    """Decode document bytes: utf-8 first, charset-normalizer as the fallback."""
    if isinstance(body, str):
        return body
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError:
        result = from_bytes(body).best()
        if result is None:
            return body.decode("utf-8", errors="replace")
        return str(result)


def decode_data_uri(uri: str) -> bytes:
    header, _, payload = uri.partition(",")
    if header.lower().endswith(";base64"):
        return base64.b64decode(payload)
    return unquote_to_bytes(payload)


def _rel_tokens(tag: Tag) -> List[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return [token.lower() for token in rel]


def _is_stylesheet_link(tag: Tag) -> bool:
    rel = _rel_tokens(tag)
    if "stylesheet" in rel:
        return True
    return "preload" in rel and (tag.get("as") or "").lower() == "style"


def _is_not_print(tag: Tag) -> bool:
    media = (tag.get("media") or "").strip()
    onload = tag.get("onload") or ""
    return media != "print" or "media" in onload


def _media_query(tag: Tag) -> str:
    media = (tag.get("media") or "").strip()
    return "" if not media or media in _TRIVIAL_MEDIA else media


def _imports(css: str) -> Iterable[Tuple[str, str]]:
    for match in _IMPORT_RE.finditer(css):
        href = (match.group("url") or match.group("str") or "").strip()
        media = match.group("media").strip()
        if href:
            yield href, "" if media in _TRIVIAL_MEDIA else media


def get_stylesheet_refs(
    html: Union[str, bytes],
    *,
    ignore_inlined_styles: bool = False,
    unique: bool = False,
) -> List[StylesheetRef]:
    """Stylesheets referenced by ``html`` in document order.

    Picks up ``<link rel=stylesheet>``, ``<link rel=preload as=style>``,
    ``@import`` rules inside ``<style>`` and the ``<style>`` blocks themselves
    (as bytes). Print-only links are skipped unless their ``onload`` swaps the
    media. ``data:`` hrefs are decoded to bytes.
    """
    soup = BeautifulSoup(decode_html(html), "lxml")
    refs: List[StylesheetRef] = []
    for tag in soup.find_all(["link", "style"]):
        if tag.find_parent("noscript") is not None:
            continue
        if tag.name == "link":
            href = (tag.get("href") or "").strip()
            if not href or not _is_stylesheet_link(tag) or not _is_not_print(tag):
                continue
            media = _media_query(tag)
            if href.startswith("data:"):
                refs.append(StylesheetRef(decode_data_uri(href), media))
            else:
                refs.append(StylesheetRef(href, media))
            continue
        if not _is_not_print(tag):
            continue
        text = tag.string or tag.get_text() or ""
        for href, media in _imports(text):
            if not href.startswith("data:"):
                refs.append(StylesheetRef(href, media))
        if text.strip() and not ignore_inlined_styles:
            refs.append(StylesheetRef(text.encode("utf-8"), _media_query(tag)))
    if unique:
        return unique_refs(refs)
    return refs


def unique_refs(refs: Sequence[StylesheetRef]) -> List[StylesheetRef]:
    """Drop repeated ``(media, value)`` pairs, keeping the first occurrence."""
    seen = set()
    result: List[StylesheetRef] = []
    for ref in refs:
        key = (ref.media, ref.value)
        if key in seen:
            continue
        seen.add(key)
        result.append(ref)
    return result


def get_stylesheet_hrefs(html: Union[str, bytes], *, ignore_inlined_styles: bool = False) -> List[str]:
    return [
        ref.value
        for ref in get_stylesheet_refs(html, ignore_inlined_styles=ignore_inlined_styles)
        if isinstance(ref.value, str)
    ]


# ---------------------------------------------------------------------------
# Inlining


def _defer(soup: BeautifulSoup, link: Tag, strategy: str) -> Tag:
    """Rewrite ``link`` so it no longer blocks rendering. Returns the last node written."""
    fallback = soup.new_tag("noscript")
    original = soup.new_tag("link", attrs={"rel": "stylesheet", "href": link.get("href", "")})
    if link.get("media"):
        original["media"] = link["media"]
    fallback.append(original)

    if strategy == "swap":
        link["rel"] = "preload"
        link["as"] = "style"
        link["onload"] = "this.onload=null;this.rel='stylesheet'"
    elif strategy == "body":
        link.extract()
        body = soup.body or soup
        body.append(link)
        return link
    else:
        media = (link.get("media") or "all").strip()
        link["media"] = "print"
        link["onload"] = f"this.media='{media}'"
    link.insert_after(fallback)
    return fallback


def inline_critical(
    html: Union[str, bytes],
    css: str,
    *,
    strategy: str = "media",
    replace_stylesheets: Union[None, bool, Sequence[str]] = None,
    extract: bool = False,
) -> str:
    """Put ``css`` in a ``<style>`` block and defer the document's stylesheet links.

    ``replace_stylesheets`` as a sequence swaps every stylesheet link for
    deferred links to the given hrefs; ``False`` leaves links untouched;
    ``None`` defers the existing links in place.
    """
    soup = BeautifulSoup(decode_html(html), "html.parser")
    links = [
        tag
        for tag in soup.find_all("link")
        if tag.get("href") and "stylesheet" in _rel_tokens(tag) and tag.find_parent("noscript") is None
    ]

    head = soup.head
    if head is None:
        head = soup.new_tag("head")
        if soup.html is not None:
            soup.html.insert(0, head)
        else:
            soup.insert(0, head)

    style = soup.new_tag("style")
    style.string = css
    head_links = [link for link in links if link.find_parent("head") is head]
    if head_links:
        head_links[0].insert_before(style)
    else:
        head.append(style)

    if replace_stylesheets is False:
        return str(soup)

    if replace_stylesheets is not None:
        anchor: Optional[Tag] = style
        for link in links:
            link.decompose()
        for href in replace_stylesheets:
            replacement = soup.new_tag("link", attrs={"rel": "stylesheet", "href": href})
            anchor.insert_after(replacement)
            anchor = _defer(soup, replacement, strategy)
        return str(soup)

    if extract:
        logger.warning("extract without a target.uncritical path keeps the original stylesheets deferred")
    for link in links:
        _defer(soup, link, strategy)
    return str(soup)
