"""Rendering engine that decides which rules are critical for one viewport.

``Renderer`` is the seam the orchestrator talks to. ``PlaywrightRenderer``
loads the prepared document in headless Chromium, asks the page which
selectors hit an element above the fold and keeps those rules.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from ..core.errors import CriticalError, PageUnloadedError, RendererTimeoutError
from .critical_config import DEFAULT_MAX_IMAGE_FILE_SIZE, DEFAULT_TIMEOUT_MS, DEFAULT_USER_AGENT, PLAYWRIGHT_HEADED
from .css_utils import (
    at_rule_header,
    decl_text,
    declarations,
    match_any,
    parse_stylesheet,
    rule_list,
    split_selectors,
)

try:  # Playwright is optional until a real render is requested
    from playwright.async_api import async_playwright  # type: ignore
except Exception:  # pragma: no cover - handled at runtime
    async_playwright = None  # type: ignore

logger = logging.getLogger(__name__)

_PSEUDO_RE = re.compile(
    r"::?(?:hover|focus-visible|focus-within|focus|active|visited|link|target|"
    r"before|after|first-line|first-letter|selection|placeholder|marker|backdrop|"
    r"-(?:webkit|moz|ms|o)-[\w-]+)(?:\([^)]*\))?",
    re.IGNORECASE,
)
_MIN_WIDTH_RE = re.compile(r"min-width\s*:\s*(\d+(?:\.\d+)?)\s*(px|em|rem)?", re.IGNORECASE)
_DATA_URI_RE = re.compile(r"url\(\s*['\"]?(data:[^'\")]*)", re.IGNORECASE)
_UNLOADED_MARKERS = (
    "execution context was destroyed",
    "target closed",
    "target page, context or browser has been closed",
    "page has been closed",
)
_GROUPING_AT_RULES = {"supports", "layer", "container", "document"}
_KEPT_STATEMENTS = {"charset", "namespace", "layer"}

_VISIBLE_JS = """
(selectors) => {
  const fold = window.innerHeight;
  return selectors.map((selector) => {
    let nodes;
    try {
      nodes = document.querySelectorAll(selector);
    } catch (e) {
      return false;
    }
    for (const node of nodes) {
      if (node.getBoundingClientRect().top < fold) {
        return true;
      }
    }
    return false;
  });
}
"""


@dataclass(frozen=True)
class RenderRequest:
    """Everything one viewport render needs."""

    url: str
    css: str
    width: int
    height: int
    force_include: Tuple[Any, ...] = ()
    timeout: int = DEFAULT_TIMEOUT_MS
    max_embedded_base64_length: int = DEFAULT_MAX_IMAGE_FILE_SIZE
    keep_larger_media_queries: bool = False
    user_agent: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)


class Renderer(Protocol):
    async def render(self, request: RenderRequest) -> str:
        ...


def probe_selector(selector: str) -> str:
    """Selector without dynamic pseudo-classes and pseudo-elements, as the page can query it."""
    stripped = _PSEUDO_RE.sub("", selector).strip()
    if not stripped:
        return "*"
    if stripped.endswith((">", "+", "~")):
        return f"{stripped} *"
    return stripped


def media_allowed(prelude: str, width: int, keep_larger: bool = False) -> bool:
    lowered = prelude.lower()
    if re.search(r"\bprint\b", lowered) and not re.search(r"\b(?:screen|all)\b", lowered):
        return False
    if keep_larger:
        return True
    for match in _MIN_WIDTH_RE.finditer(lowered):
        value = float(match.group(1))
        if match.group(2) in ("em", "rem"):
            value *= 16
        if value > width:
            return False
    return True


def _oversized(decl: Tuple[str, str, bool], limit: int) -> bool:
    return any(len(uri) > limit for uri in _DATA_URI_RE.findall(decl[1]))


def _font_family(node) -> str:
    for name, value, _ in declarations(node.content):
        if name == "font-family":
            return value.strip("'\" ")
    return ""


class CriticalRuleFilter:
    """Keeps the rules whose selectors are visible above the fold.

    ``@font-face`` and ``@keyframes`` blocks survive only when a kept
    declaration refers to them.
    """

    def __init__(self, request: RenderRequest, visible: Dict[str, bool]) -> None:
        self.request = request
        self.visible = visible
        self.used_values: List[str] = []

    def selector_kept(self, selector: str) -> bool:
        if self.visible.get(selector):
            return True
        return match_any(self.request.force_include, [selector])

    def _rule(self, node) -> Optional[str]:
        kept = [selector for selector in split_selectors(node.prelude) if self.selector_kept(selector)]
        if not kept:
            return None
        decls = [
            decl
            for decl in declarations(node.content)
            if not _oversized(decl, self.request.max_embedded_base64_length)
        ]
        if not decls:
            return None
        for name, value, _ in decls:
            if name.startswith(("font", "animation")):
                self.used_values.append(value)
        return f"{','.join(kept)}{{{';'.join(decl_text(decl) for decl in decls)}}}"

    def _referenced(self, name: str) -> bool:
        if not name:
            return False
        pattern = re.compile(rf"(?<![\w-]){re.escape(name)}(?![\w-])")
        return any(pattern.search(value) for value in self.used_values)

    def walk(self, nodes: Sequence, render_deferred: bool) -> List[str]:
        out: List[str] = []
        for node in nodes:
            if node.type == "qualified-rule":
                rule = self._rule(node)
                if rule:
                    out.append(rule)
                continue
            if node.type != "at-rule":
                continue
            keyword = node.lower_at_keyword
            header = at_rule_header(node)
            if node.content is None:
                if keyword in _KEPT_STATEMENTS:
                    out.append(f"{header};")
                continue
            if keyword == "media" or keyword in _GROUPING_AT_RULES:
                if keyword == "media" and not media_allowed(
                    header[len("@media"):], self.request.width, self.request.keep_larger_media_queries
                ):
                    continue
                inner = self.walk(rule_list(node.content), render_deferred)
                if inner:
                    out.append(f"{header}{{{''.join(inner)}}}")
            elif not render_deferred:
                continue
            elif keyword == "font-face":
                if self._referenced(_font_family(node)):
                    decls = [decl_text(decl) for decl in declarations(node.content)]
                    out.append(f"{header}{{{';'.join(decls)}}}")
            elif keyword.endswith("keyframes"):
                name = header.split(" ", 1)[1].strip("'\" ") if " " in header else ""
                if self._referenced(name):
                    frames = []
                    for frame in rule_list(node.content):
                        decls = [decl_text(decl) for decl in declarations(frame.content)]
                        frames.append(f"{','.join(split_selectors(frame.prelude))}{{{';'.join(decls)}}}")
                    out.append(f"{header}{{{''.join(frames)}}}")
        return out

    def apply(self, nodes: Sequence) -> str:
        self.walk(nodes, render_deferred=False)
        return "".join(self.walk(nodes, render_deferred=True))


def collect_selectors(nodes: Sequence) -> List[str]:
    """Every style-rule selector in ``nodes`` (nested in grouping at-rules too), first occurrence only."""
    found: Dict[str, None] = {}
    for node in nodes:
        if node.type == "qualified-rule":
            for selector in split_selectors(node.prelude):
                found.setdefault(selector, None)
        elif node.type == "at-rule" and node.content is not None:
            keyword = node.lower_at_keyword
            if keyword == "media" or keyword in _GROUPING_AT_RULES:
                for selector in collect_selectors(rule_list(node.content)):
                    found.setdefault(selector, None)
    return list(found)


def _is_unloaded(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _UNLOADED_MARKERS)


class PlaywrightRenderer:
    """Critical CSS via headless Chromium. One browser per instance, one context per viewport."""

    def __init__(self, *, headed: bool = PLAYWRIGHT_HEADED) -> None:
        self.headed = headed
        self._playwright: Any = None
        self._browser: Any = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "PlaywrightRenderer":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _get_browser(self) -> Any:
        if async_playwright is None:
            raise CriticalError(
                "Playwright is not installed. Run `pip install playwright` and `playwright install chromium`."
            )
        async with self._lock:
            if self._browser is None:
                self._playwright = await async_playwright().start()  # type: ignore
                self._browser = await self._playwright.chromium.launch(headless=not self.headed)
        return self._browser

    async def close(self) -> None:
        try:
            if self._browser is not None:
                await self._browser.close()
        finally:
            self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
            self._playwright = None

    async def _visible(self, request: RenderRequest, selectors: List[str]) -> Dict[str, bool]:
        browser = await self._get_browser()
        context = await browser.new_context(
            user_agent=request.user_agent or DEFAULT_USER_AGENT,
            viewport={"width": request.width, "height": request.height},
            extra_http_headers=request.headers or None,
        )
        try:
            page = await context.new_page()
            await page.goto(request.url, timeout=request.timeout, wait_until="load")
            probes = [probe_selector(selector) for selector in selectors]
            flags = await page.evaluate(_VISIBLE_JS, probes)
        finally:
            await context.close()
        return dict(zip(selectors, flags))

    async def render(self, request: RenderRequest) -> str:
        nodes = parse_stylesheet(request.css, source="critical", strict=False, compact=True)
        selectors = collect_selectors(nodes)
        logger.debug(
            "Rendering %s at %sx%s (%d selectors, timeout %sms)",
            request.url,
            request.width,
            request.height,
            len(selectors),
            request.timeout,
        )
        if request.extra:
            logger.debug("Ignoring unsupported render options: %s", sorted(request.extra))
        try:
            visible = await self._visible(request, selectors) if selectors else {}
        except CriticalError:
            raise
        except Exception as exc:
            if _is_unloaded(exc):
                raise PageUnloadedError(str(exc)) from exc
            if type(exc).__name__ == "TimeoutError":
                raise RendererTimeoutError(request.width, request.height, request.timeout) from exc
            raise
        return CriticalRuleFilter(request, visible).apply(nodes)
