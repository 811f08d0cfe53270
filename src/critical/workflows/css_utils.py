"""CSS helpers built on tinycss2 (parsing) and csscompressor (minification).

Only ``url()`` references, rule selectors, declarations and at-rule nesting
are understood here; nothing tries to evaluate CSS semantics.
"""

from __future__ import annotations

import base64
import logging
import mimetypes
import re
from typing import (
    TYPE_CHECKING,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
)
from urllib.parse import urlsplit

import csscompressor
import tinycss2
from tinycss2.serializer import serialize_identifier, serialize_string_value, serialize_url

from ..core.errors import AssetNotFoundError, CssSyntaxError
from .critical_config import INLINE_IMAGE_EXTENSIONS
from .path_utils import resolve

if TYPE_CHECKING:  # pragma: no cover
    from .asset_fetch import AssetFetcher
    from .options import IgnoreRules, Matcher

logger = logging.getLogger(__name__)

# At-rules whose block holds rules rather than declarations.
_RULE_LIST_AT_RULES = {"media", "supports", "document", "layer", "container", "scope", "starting-style"}

_BLOCK_BRACKETS = {"() block": ("(", ")"), "[] block": ("[", "]"), "{} block": ("{", "}")}

UrlTransform = Callable[[str], Optional[str]]


# ---------------------------------------------------------------------------
# Parsing


def _first_error(nodes: Iterable) -> Optional[object]:
    for node in nodes or ():
        node_type = getattr(node, "type", None)
        if node_type == "error":
            return node
        for attr in ("prelude", "content", "arguments"):
            child = getattr(node, attr, None)
            if isinstance(child, list):
                found = _first_error(child)
                if found is not None:
                    return found
    return None


def parse_stylesheet(css: str, *, source: str = "<css>", strict: bool = True, compact: bool = False) -> List:
    """Parse ``css`` into tinycss2 nodes; ``strict`` turns the first parse error into ``CssSyntaxError``."""
    nodes = tinycss2.parse_stylesheet(css, skip_comments=compact, skip_whitespace=compact)
    error = _first_error(nodes)
    if error is not None:
        if strict:
            raise CssSyntaxError(source, error.source_line, error.source_column, error.message)
        logger.debug("CSS parse error in %s: %s", source, error.message)
    return nodes


def _clean(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def split_selectors(prelude: Sequence) -> List[str]:
    """Top-level comma split of a rule prelude, whitespace-normalised."""
    parts: List[str] = []
    current: List = []
    for token in prelude:
        if token.type == "literal" and token.value == ",":
            parts.append(_clean(tinycss2.serialize(current)))
            current = []
        else:
            current.append(token)
    parts.append(_clean(tinycss2.serialize(current)))
    return [part for part in parts if part]


def declarations(content: Sequence) -> List[Tuple[str, str, bool]]:
    result: List[Tuple[str, str, bool]] = []
    for item in tinycss2.parse_declaration_list(content or [], skip_comments=True, skip_whitespace=True):
        if item.type != "declaration":
            continue
        result.append((item.lower_name, _clean(tinycss2.serialize(item.value)), item.important))
    return result


def decl_text(decl: Tuple[str, str, bool]) -> str:
    name, value, important = decl
    return f"{name}:{value}{'!important' if important else ''}"


def is_rule_list(at_keyword: str) -> bool:
    keyword = at_keyword.lower()
    return keyword in _RULE_LIST_AT_RULES or keyword.endswith("keyframes")


def rule_list(content: Sequence) -> List:
    return [
        node
        for node in tinycss2.parse_rule_list(content or [], skip_comments=True, skip_whitespace=True)
        if node.type in ("qualified-rule", "at-rule")
    ]


def at_rule_header(node) -> str:
    prelude = _clean(tinycss2.serialize(node.prelude))
    keyword = f"@{serialize_identifier(node.at_keyword)}"
    return f"{keyword} {prelude}" if prelude else keyword


# ---------------------------------------------------------------------------
# url() handling


def _iter_urls(nodes: Iterable) -> Iterator[str]:
    for node in nodes or ():
        node_type = getattr(node, "type", None)
        if node_type == "url":
            yield node.value
        elif node_type == "function" and node.lower_name == "url":
            strings = [arg for arg in node.arguments if arg.type == "string"]
            if strings:
                yield strings[0].value
            else:
                raw = _clean(tinycss2.serialize(node.arguments))
                if raw:
                    yield raw
        elif node_type == "at-rule" and node.lower_at_keyword == "import":
            strings = [arg for arg in node.prelude if arg.type == "string"]
            if strings:
                yield strings[0].value
        for attr in ("prelude", "content", "arguments"):
            child = getattr(node, attr, None)
            if isinstance(child, list) and not (node_type == "function" and node.lower_name == "url"):
                yield from _iter_urls(child)


def get_assets(css: str) -> List[str]:
    """Every ``url()``/``@import`` reference in ``css`` except ``data:`` URIs, in source order."""
    nodes = tinycss2.parse_stylesheet(css, skip_comments=True, skip_whitespace=False)
    return [url for url in _iter_urls(nodes) if url and not url.lower().startswith("data:")]


def _url_representation(node, new_url: str) -> str:
    if node.type == "url":
        return f"url({serialize_url(new_url)})"
    strings = [arg for arg in node.arguments if arg.type == "string"]
    quote = '"'
    if strings and strings[0].representation.startswith("'"):
        quote = "'"
    escaped = serialize_string_value(new_url)
    if quote == "'":
        escaped = escaped.replace('\\"', '"').replace("'", "\\'")
    return f"url({quote}{escaped}{quote})"


def _url_of(node) -> Optional[str]:
    if node.type == "url":
        return node.value
    if node.type == "function" and node.lower_name == "url":
        strings = [arg for arg in node.arguments if arg.type == "string"]
        if strings:
            return strings[0].value
        return _clean(tinycss2.serialize(node.arguments)) or None
    return None


def _write(nodes: Iterable, transform: Optional[UrlTransform], out: List[str], in_block: bool) -> None:
    for node in nodes or ():
        node_type = getattr(node, "type", None)
        if in_block and transform is not None and node_type in ("url", "function"):
            url = _url_of(node)
            if url is not None:
                replaced = transform(url)
                if replaced is not None and replaced != url:
                    out.append(_url_representation(node, replaced))
                    continue
        if node_type == "qualified-rule":
            _write(node.prelude, transform, out, in_block)
            out.append("{")
            _write(node.content, transform, out, True)
            out.append("}")
        elif node_type == "at-rule":
            out.append(f"@{serialize_identifier(node.at_keyword)}")
            _write(node.prelude, transform, out, in_block)
            if node.content is None:
                out.append(";")
            else:
                out.append("{")
                _write(node.content, transform, out, True)
                out.append("}")
        elif node_type == "function":
            out.append(f"{serialize_identifier(node.name)}(")
            _write(node.arguments, transform, out, in_block)
            out.append(")")
        elif node_type in _BLOCK_BRACKETS:
            opening, closing = _BLOCK_BRACKETS[node_type]
            out.append(opening)
            _write(node.content, transform, out, in_block)
            out.append(closing)
        elif node_type == "error":
            continue
        else:
            out.append(node.serialize())


def rewrite_urls(css: str, transform: UrlTransform, *, source: str = "<css>", strict: bool = True) -> str:
    """Rewrite ``url()`` values inside declaration blocks.

    ``transform`` receives the unescaped reference and returns the replacement,
    or ``None`` to keep it. Rule preludes and ``@import`` are left alone.
    """
    nodes = parse_stylesheet(css, source=source, strict=strict)
    out: List[str] = []
    _write(nodes, transform, out, False)
    return "".join(out)


# ---------------------------------------------------------------------------
# Serialisation


def serialize_rules(nodes: Sequence, *, pretty: bool = False, depth: int = 0) -> str:
    """Write rules back out, compact (``a{b:c}``) or one declaration per line."""
    pad = "  " * depth if pretty else ""
    inner = "  " * (depth + 1) if pretty else ""
    chunks: List[str] = []
    for node in nodes:
        if node.type == "qualified-rule":
            selectors = split_selectors(node.prelude)
            decls = declarations(node.content)
            if not selectors or not decls:
                continue
            chunks.append(_format_block(", " if pretty else ",", selectors, decls, pad, inner, pretty))
        elif node.type == "at-rule":
            header = at_rule_header(node)
            if node.content is None:
                chunks.append(f"{pad}{header};")
            elif is_rule_list(node.at_keyword):
                body = serialize_rules(rule_list(node.content), pretty=pretty, depth=depth + 1)
                if not body:
                    continue
                if pretty:
                    chunks.append(f"{pad}{header} {{\n{body}\n{pad}}}")
                else:
                    chunks.append(f"{header}{{{body}}}")
            else:
                decls = declarations(node.content)
                if not decls:
                    continue
                chunks.append(_format_block("", [header], decls, pad, inner, pretty))
    return ("\n" if pretty else "").join(chunks)


def _format_block(
    joiner: str,
    selectors: Sequence[str],
    decls: Sequence[Tuple[str, str, bool]],
    pad: str,
    inner: str,
    pretty: bool,
) -> str:
    if not pretty:
        return f"{joiner.join(selectors)}{{{';'.join(decl_text(d) for d in decls)}}}"
    lines = [f"{inner}{name}: {value}{' !important' if important else ''};" for name, value, important in decls]
    head = f",\n{pad}".join(selectors)
    return f"{pad}{head} {{\n" + "\n".join(lines) + f"\n{pad}}}"


def minify(css: str) -> str:
    return csscompressor.compress(css)


def prettify(css: str) -> str:
    nodes = parse_stylesheet(css, strict=False, compact=True)
    body = serialize_rules(nodes, pretty=True)
    return f"{body}\n" if body else ""


# ---------------------------------------------------------------------------
# Combination of several renderer outputs


class _Block:
    __slots__ = ("kind", "header", "text", "children")

    def __init__(self, kind: str, header: str, text: str = "", children: Optional[List["_Block"]] = None) -> None:
        self.kind = kind
        self.header = header
        self.text = text
        self.children = children

    def render(self) -> str:
        if self.children is None:
            return self.text
        return f"{self.header}{{{''.join(child.render() for child in self.children)}}}"


def _blocks(nodes: Sequence) -> List[_Block]:
    blocks: List[_Block] = []
    for node in nodes:
        if node.type == "qualified-rule":
            text = serialize_rules([node])
            if text:
                blocks.append(_Block("rule", "", text))
        elif node.type == "at-rule":
            header = at_rule_header(node)
            if node.content is not None and is_rule_list(node.at_keyword):
                children = _blocks(rule_list(node.content))
                if children:
                    kind = "media" if node.lower_at_keyword == "media" else "group"
                    blocks.append(_Block(kind, header, children=children))
            else:
                text = serialize_rules([node])
                if text:
                    kind = "font-face" if node.lower_at_keyword == "font-face" else "at-rule"
                    blocks.append(_Block(kind, header, text))
    return blocks


def _merge_adjacent_media(blocks: List[_Block]) -> List[_Block]:
    merged: List[_Block] = []
    for block in blocks:
        if block.children is not None:
            block.children = _merge_adjacent_media(block.children)
        previous = merged[-1] if merged else None
        if (
            previous is not None
            and block.kind == "media"
            and previous.kind == "media"
            and previous.header == block.header
        ):
            previous.children = _merge_adjacent_media(previous.children + block.children)
            continue
        merged.append(block)
    return merged


def _dedupe(blocks: List[_Block]) -> List[_Block]:
    """Drop repeated rules, media blocks and font-face rules, keeping the last occurrence."""
    seen = set()
    kept: List[_Block] = []
    for block in reversed(blocks):
        if block.children is not None:
            block.children = _dedupe(block.children)
        key = block.render()
        if block.kind in ("rule", "media", "font-face") and key in seen:
            continue
        seen.add(key)
        kept.append(block)
    kept.reverse()
    return kept


def combine(css_list: Sequence[str]) -> str:
    """Combine per-viewport results. A single input comes back untouched.

    Several inputs are concatenated in the given order, adjacent media blocks
    with the same query are merged and duplicates are removed. Input order
    decides which duplicate survives, so callers pass ascending widths.
    """
    if len(css_list) == 1:
        return css_list[0]
    nodes = parse_stylesheet(" ".join(css_list), strict=False, compact=True)
    blocks = _dedupe(_merge_adjacent_media(_blocks(nodes)))
    return minify("".join(block.render() for block in blocks))


# ---------------------------------------------------------------------------
# Matchers (ignore filter and force-include lists)


def matches(matcher: "Matcher", candidates: Sequence[str]) -> bool:
    if isinstance(matcher, str):
        return any(candidate == matcher for candidate in candidates)
    if isinstance(matcher, re.Pattern):
        return any(matcher.search(candidate) for candidate in candidates)
    if callable(matcher):
        return any(bool(matcher(candidate)) for candidate in candidates)
    return False


def match_any(matchers: Sequence["Matcher"], candidates: Sequence[str]) -> bool:
    return any(matches(matcher, candidates) for matcher in matchers)


def _filter_nodes(nodes: Sequence, rules: "IgnoreRules", out: List[str]) -> None:
    for node in nodes:
        if node.type == "qualified-rule":
            selectors = split_selectors(node.prelude)
            selector_text = ",".join(selectors)
            if match_any(rules.rule, [selector_text, *selectors]):
                continue
            decls = [
                decl
                for decl in declarations(node.content)
                if not match_any(rules.decl, [decl[0], f"{decl[0]}: {decl[1]}", decl_text(decl)])
            ]
            if decls and selectors:
                out.append(f"{selector_text}{{{';'.join(decl_text(d) for d in decls)}}}")
        elif node.type == "at-rule":
            header = at_rule_header(node)
            keyword = f"@{node.lower_at_keyword}"
            prelude = _clean(tinycss2.serialize(node.prelude))
            if match_any(rules.atrule, [keyword, header, prelude] if prelude else [keyword, header]):
                continue
            if node.content is None:
                out.append(f"{header};")
            elif is_rule_list(node.at_keyword):
                inner: List[str] = []
                _filter_nodes(rule_list(node.content), rules, inner)
                if inner:
                    out.append(f"{header}{{{''.join(inner)}}}")
            else:
                decls = [
                    decl
                    for decl in declarations(node.content)
                    if not match_any(rules.decl, [decl[0], f"{decl[0]}: {decl[1]}", decl_text(decl)])
                ]
                if decls:
                    out.append(f"{header}{{{';'.join(decl_text(d) for d in decls)}}}")


def apply_ignore(css: str, rules: "IgnoreRules") -> str:
    """Discard at-rules, rules and declarations matched by ``rules``."""
    if not rules:
        return css
    nodes = parse_stylesheet(css, strict=False, compact=True)
    out: List[str] = []
    _filter_nodes(nodes, rules, out)
    return "".join(out)


# ---------------------------------------------------------------------------
# Uncritical complement


def _critical_index(nodes: Sequence, context: Tuple[str, ...], index: Dict[Tuple[str, ...], set]) -> None:
    for node in nodes:
        if node.type == "qualified-rule":
            decls = {decl_text(decl) for decl in declarations(node.content)}
            for selector in split_selectors(node.prelude):
                index.setdefault(context + (selector,), set()).update(decls)
        elif node.type == "at-rule" and node.content is not None:
            header = at_rule_header(node)
            if is_rule_list(node.at_keyword):
                _critical_index(rule_list(node.content), context + (header,), index)
            else:
                index.setdefault(context + (header,), set()).update(
                    decl_text(decl) for decl in declarations(node.content)
                )


def _subtract(nodes: Sequence, context: Tuple[str, ...], index: Dict[Tuple[str, ...], set], out: List[str]) -> None:
    for node in nodes:
        if node.type == "qualified-rule":
            decls = declarations(node.content)
            groups: Dict[Tuple[str, ...], List[str]] = {}
            for selector in split_selectors(node.prelude):
                taken = index.get(context + (selector,), set())
                remaining = tuple(decl_text(decl) for decl in decls if decl_text(decl) not in taken)
                groups.setdefault(remaining, []).append(selector)
            for remaining, selectors in groups.items():
                if remaining:
                    out.append(f"{','.join(selectors)}{{{';'.join(remaining)}}}")
        elif node.type == "at-rule":
            header = at_rule_header(node)
            if node.content is None:
                out.append(f"{header};")
            elif is_rule_list(node.at_keyword):
                inner: List[str] = []
                _subtract(rule_list(node.content), context + (header,), index, inner)
                if inner:
                    out.append(f"{header}{{{''.join(inner)}}}")
            else:
                taken = index.get(context + (header,), set())
                decls = [decl_text(decl) for decl in declarations(node.content)]
                if decls and set(decls) <= taken:
                    continue
                if decls:
                    out.append(f"{header}{{{';'.join(decls)}}}")


def extract_uncritical(css: str, critical: str) -> str:
    """Remove from ``css`` every declaration already present in ``critical`` under the same selector and context."""
    index: Dict[Tuple[str, ...], set] = {}
    _critical_index(parse_stylesheet(critical, strict=False, compact=True), (), index)
    out: List[str] = []
    _subtract(parse_stylesheet(css, strict=False, compact=True), (), index, out)
    return minify("".join(out))


# ---------------------------------------------------------------------------
# Image inlining


def image_mime(path: str, blob: bytes) -> str:
    lower = urlsplit(path).path.lower()
    if lower.endswith(".svg") or blob.lstrip().startswith(b"<svg"):
        return "image/svg+xml"
    if lower.endswith(".png") or blob.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if lower.endswith(".webp") or (blob[:4] == b"RIFF" and blob[8:12] == b"WEBP"):
        return "image/webp"
    if lower.endswith(".gif") or blob.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if lower.endswith((".jpg", ".jpeg")) or blob.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if lower.endswith(".ico"):
        return "image/x-icon"
    guessed, _ = mimetypes.guess_type(lower)
    return guessed or "application/octet-stream"


def _is_inlinable(url: str) -> bool:
    if not url or url.startswith(("data:", "#")):
        return False
    return urlsplit(url).path.lower().endswith(INLINE_IMAGE_EXTENSIONS)


async def inline_images(
    css: str,
    search_paths: Sequence[str],
    max_size: int,
    fetcher: "AssetFetcher",
) -> str:
    """Embed referenced images no larger than ``max_size`` bytes as base64 ``data:`` URIs."""
    replacements: Dict[str, str] = {}
    for url in dict.fromkeys(get_assets(css)):
        if not _is_inlinable(url):
            continue
        try:
            location = await resolve(url, search_paths, fetcher)
        except AssetNotFoundError:
            logger.debug("Not inlining %s: not found in %s", url, list(search_paths))
            continue
        blob = await fetcher.fetch(location)
        if not blob or len(blob) > max_size:
            logger.debug("Not inlining %s (%d bytes, limit %d)", url, len(blob), max_size)
            continue
        replacements[url] = f"data:{image_mime(location, blob)};base64,{base64.b64encode(blob).decode('ascii')}"
    if not replacements:
        return css
    logger.debug("Inlined %d image(s): %s", len(replacements), sorted(replacements))
    return rewrite_urls(css, replacements.get, strict=False)


__all__ = [
    "apply_ignore",
    "combine",
    "extract_uncritical",
    "get_assets",
    "inline_images",
    "match_any",
    "minify",
    "parse_stylesheet",
    "prettify",
    "rewrite_urls",
    "serialize_rules",
    "split_selectors",
]
