"""Option validation for ``generate``.

Every accepted key is listed in ``FIELDS`` together with the coercer that turns
the caller's value into its typed form. Nothing is inferred from the shape of a
value at runtime: a key that is not in the table is rejected, and a value the
coercer does not accept raises ``ConfigError`` with the first failure.
"""

from __future__ import annotations

import logging
import math
import os
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Mapping, NamedTuple, Optional, Pattern, Tuple, Union

from ..core.errors import ConfigError
from ..core.keys import (
    K_ALIASES,
    K_ASSET_PATHS,
    K_ATRULE,
    K_BASE,
    K_BASE_PATH,
    K_CONCURRENCY,
    K_CSS,
    K_DECL,
    K_DIMENSIONS,
    K_EXTRACT,
    K_FOLDER,
    K_FROM,
    K_HEIGHT,
    K_HTML,
    K_IGNORE,
    K_IGNORE_INLINED_STYLES,
    K_INCLUDE,
    K_INLINE,
    K_INLINE_IMAGES,
    K_MAX_IMAGE_FILE_SIZE,
    K_MINIFY,
    K_PASS,
    K_PATH_PREFIX,
    K_POSTPROCESS,
    K_REBASE,
    K_RENDER,
    K_REPLACE_STYLESHEETS,
    K_REQUEST,
    K_RULE,
    K_SRC,
    K_STRATEGY,
    K_STRICT,
    K_TARGET,
    K_TIMEOUT,
    K_TO,
    K_UNCRITICAL,
    K_USER,
    K_USER_AGENT,
    K_WIDTH,
)
from .critical_config import (
    DEFAULT_CONCURRENCY,
    DEFAULT_HEIGHT,
    DEFAULT_MAX_IMAGE_FILE_SIZE,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_WIDTH,
    INLINE_STRATEGIES,
    RENDER_FORBIDDEN_KEYS,
)
from .models import Asset, Dimension, InlineAsset, LocalAsset, RemoteAsset

logger = logging.getLogger(__name__)

Matcher = Union[str, Pattern[str], Callable[[str], bool]]
RebasePolicy = Union[bool, "RebaseMapping", Callable[..., str]]
ReplaceStylesheets = Union[None, bool, Tuple[str, ...], Callable[..., Any]]


@dataclass(frozen=True)
class RebaseMapping:
    from_path: Optional[str] = None
    to_path: Optional[str] = None


@dataclass(frozen=True)
class TargetPaths:
    css: Optional[str] = None
    html: Optional[str] = None
    uncritical: Optional[str] = None


@dataclass(frozen=True)
class IgnoreRules:
    atrule: Tuple[Matcher, ...] = ()
    rule: Tuple[Matcher, ...] = ()
    decl: Tuple[Matcher, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.atrule or self.rule or self.decl)


@dataclass(frozen=True)
class InlineOptions:
    strategy: str = "media"
    replace_stylesheets: ReplaceStylesheets = None
    base_path: str = ""
    minify: bool = True
    extract: bool = False


@dataclass(frozen=True)
class RequestOptions:
    method: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    follow_redirects: bool = True
    verify_ssl: bool = True
    timeout: Optional[float] = None


@dataclass(frozen=True)
class RenderOptions:
    timeout: int = DEFAULT_TIMEOUT_MS
    force_include: Tuple[Matcher, ...] = ()
    max_embedded_base64_length: int = DEFAULT_MAX_IMAGE_FILE_SIZE
    keep_larger_media_queries: bool = False
    custom_page_headers: Dict[str, str] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CriticalOptions:
    html: Optional[str] = None
    src: Union[None, str, Asset] = None
    css: Tuple[str, ...] = ()
    base: Optional[str] = None
    folder: Optional[str] = None
    strict: bool = False
    ignore_inlined_styles: bool = False
    extract: bool = False
    inline_images: bool = False
    postprocess: Tuple[Callable[[str], str], ...] = ()
    ignore: Optional[IgnoreRules] = None
    width: int = DEFAULT_WIDTH
    height: int = DEFAULT_HEIGHT
    dimensions: Tuple[Dimension, ...] = ()
    minify: bool = True
    inline: Optional[InlineOptions] = None
    max_image_file_size: int = DEFAULT_MAX_IMAGE_FILE_SIZE
    include: Tuple[Matcher, ...] = ()
    concurrency: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = None
    request: RequestOptions = field(default_factory=RequestOptions)
    render: RenderOptions = field(default_factory=RenderOptions)
    rebase: RebasePolicy = field(default_factory=RebaseMapping)
    target: TargetPaths = field(default_factory=TargetPaths)
    asset_paths: Tuple[str, ...] = ()
    user_agent: Optional[str] = None
    path_prefix: Optional[str] = None
    timeout: Optional[int] = None

    @property
    def rebase_mapping(self) -> RebaseMapping:
        return self.rebase if isinstance(self.rebase, RebaseMapping) else RebaseMapping()


# ---------------------------------------------------------------------------
# Coercers. Each takes (key, value) and returns the typed value or raises.


def _fail(key: str, expected: str) -> ConfigError:
    return ConfigError(f'"{key}" must be {expected}')


def _canonical(key: str) -> str:
    return K_ALIASES.get(key, key)


def _normalize_keys(key: str, value: Any) -> Dict[str, Any]:
    if not isinstance(value, Mapping):
        raise _fail(key, "an object")
    return {_canonical(str(k)): v for k, v in value.items()}


def _as_str(key: str, value: Any) -> str:
    if isinstance(value, os.PathLike):
        return os.fspath(value)
    if not isinstance(value, str):
        raise _fail(key, "a string")
    return value


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "false", "1", "0"}:
        return value.strip().lower() in {"true", "1"}
    raise _fail(key, "a boolean")


def _as_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise _fail(key, "a number")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and re.fullmatch(r"\s*\d+\s*", value):
        return int(value)
    raise _fail(key, "a number")


def _as_str_tuple(key: str, value: Any) -> Tuple[str, ...]:
    if isinstance(value, (str, os.PathLike)):
        return (_as_str(key, value),)
    if isinstance(value, (list, tuple)):
        return tuple(_as_str(f"{key}[{index}]", item) for index, item in enumerate(value))
    raise _fail(key, "a string or an array of strings")


def _as_matcher(key: str, value: Any) -> Matcher:
    if isinstance(value, (str, re.Pattern)) or callable(value):
        return value
    raise _fail(key, "a string, a regular expression or a callable")


def _as_matchers(key: str, value: Any) -> Tuple[Matcher, ...]:
    if isinstance(value, (list, tuple)):
        return tuple(_as_matcher(f"{key}[{index}]", item) for index, item in enumerate(value))
    return (_as_matcher(key, value),)


def _as_src(key: str, value: Any) -> Union[str, Asset]:
    if isinstance(value, (LocalAsset, RemoteAsset, InlineAsset)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return InlineAsset(bytes(value))
    return _as_str(key, value)


def _as_postprocess(key: str, value: Any) -> Tuple[Callable[[str], str], ...]:
    items = value if isinstance(value, (list, tuple)) else [value]
    for index, item in enumerate(items):
        if not callable(item):
            raise _fail(f"{key}[{index}]", "a callable")
    return tuple(items)


def _as_ignore(key: str, value: Any) -> IgnoreRules:
    if isinstance(value, Mapping):
        raw = _normalize_keys(key, value)
        unknown = sorted(set(raw) - {K_ATRULE, K_RULE, K_DECL})
        if unknown:
            raise ConfigError(f'"{key}.{unknown[0]}" is not allowed')
        return IgnoreRules(
            atrule=_as_matchers(f"{key}.atrule", raw[K_ATRULE]) if raw.get(K_ATRULE) is not None else (),
            rule=_as_matchers(f"{key}.rule", raw[K_RULE]) if raw.get(K_RULE) is not None else (),
            decl=_as_matchers(f"{key}.decl", raw[K_DECL]) if raw.get(K_DECL) is not None else (),
        )
    matchers = _as_matchers(key, value)
    return IgnoreRules(atrule=matchers, rule=matchers, decl=matchers)


def _as_dimension(key: str, value: Any) -> Dimension:
    if isinstance(value, Dimension):
        return value
    if isinstance(value, str):
        match = re.fullmatch(r"\s*(\d+)\s*[xX]\s*(\d+)\s*", value)
        if not match:
            raise _fail(key, "a WIDTHxHEIGHT string")
        return Dimension(int(match.group(1)), int(match.group(2)))
    if isinstance(value, Mapping):
        return Dimension(
            width=_as_int(f"{key}.width", value.get(K_WIDTH, DEFAULT_WIDTH)),
            height=_as_int(f"{key}.height", value.get(K_HEIGHT, DEFAULT_HEIGHT)),
        )
    raise _fail(key, "an object with width and height")


def _as_dimensions(key: str, value: Any) -> Tuple[Dimension, ...]:
    if isinstance(value, str):
        value = [part for part in value.split(",") if part.strip()]
    if not isinstance(value, (list, tuple)):
        raise _fail(key, "an array")
    return tuple(_as_dimension(f"{key}[{index}]", item) for index, item in enumerate(value))


def _as_concurrency(key: str, value: Any) -> Optional[int]:
    if value is None or (isinstance(value, float) and math.isinf(value)):
        return None
    number = _as_int(key, value)
    if number < 0:
        raise _fail(key, "a positive number")
    return number or None


def _as_inline(key: str, value: Any) -> Union[bool, Dict[str, Any]]:
    if isinstance(value, (bool, str)):
        return _as_bool(key, value)
    raw = _normalize_keys(key, value)
    unknown = sorted(set(raw) - {K_STRATEGY, K_REPLACE_STYLESHEETS, K_BASE_PATH, K_MINIFY, K_EXTRACT})
    if unknown:
        raise ConfigError(f'"{key}.{unknown[0]}" is not allowed')
    if K_STRATEGY in raw and raw[K_STRATEGY] not in INLINE_STRATEGIES:
        raise _fail(f"{key}.strategy", f"one of [{', '.join(INLINE_STRATEGIES)}]")
    if K_BASE_PATH in raw:
        raw[K_BASE_PATH] = _as_str(f"{key}.basePath", raw[K_BASE_PATH])
    if K_MINIFY in raw:
        raw[K_MINIFY] = _as_bool(f"{key}.minify", raw[K_MINIFY])
    if K_EXTRACT in raw:
        raw[K_EXTRACT] = _as_bool(f"{key}.extract", raw[K_EXTRACT])
    if K_REPLACE_STYLESHEETS in raw:
        raw[K_REPLACE_STYLESHEETS] = _as_replace_stylesheets(f"{key}.replaceStylesheets", raw[K_REPLACE_STYLESHEETS])
    return raw


def _as_replace_stylesheets(key: str, value: Any) -> ReplaceStylesheets:
    if value is None or callable(value):
        return value
    if value is False or value == "false":
        return False
    if isinstance(value, (list, tuple)):
        return tuple(_as_str(f"{key}[{index}]", item) for index, item in enumerate(value))
    return (_as_str(key, value),)


def _as_request(key: str, value: Any) -> RequestOptions:
    raw = _normalize_keys(key, value)
    https = raw.pop("https", None)
    verify = raw.pop("verify_ssl", True)
    if isinstance(https, Mapping):
        verify = _normalize_keys(f"{key}.https", https).get("verify_ssl", verify)
    headers = raw.pop("headers", {}) or {}
    if not isinstance(headers, Mapping):
        raise _fail(f"{key}.headers", "an object")
    timeout = raw.pop(K_TIMEOUT, None)
    method = raw.pop("method", None)
    follow = raw.pop("follow_redirects", True)
    if raw:
        raise ConfigError(f'"{key}.{sorted(raw)[0]}" is not allowed')
    return RequestOptions(
        method=_as_str(f"{key}.method", method).lower() if method is not None else None,
        headers={str(k): str(v) for k, v in headers.items()},
        follow_redirects=_as_bool(f"{key}.followRedirect", follow),
        verify_ssl=_as_bool(f"{key}.https.rejectUnauthorized", verify),
        timeout=float(_as_int(f"{key}.timeout", timeout)) / 1000 if timeout is not None else None,
    )


def _as_render(key: str, value: Any) -> Dict[str, Any]:
    raw = _normalize_keys(key, value)
    for forbidden in RENDER_FORBIDDEN_KEYS:
        if forbidden in raw:
            raise ConfigError(f'"{key}.{forbidden}" is not allowed')
    if K_TIMEOUT in raw:
        raw[K_TIMEOUT] = _as_int(f"{key}.timeout", raw[K_TIMEOUT])
    if "max_embedded_base64_length" in raw:
        raw["max_embedded_base64_length"] = _as_int(
            f"{key}.maxEmbeddedBase64Length", raw["max_embedded_base64_length"]
        )
    if "force_include" in raw:
        raw["force_include"] = _as_matchers(f"{key}.forceInclude", raw["force_include"])
    if "keep_larger_media_queries" in raw:
        raw["keep_larger_media_queries"] = _as_bool(f"{key}.keepLargerMediaQueries", raw["keep_larger_media_queries"])
    if "custom_page_headers" in raw:
        headers = raw["custom_page_headers"]
        if not isinstance(headers, Mapping):
            raise _fail(f"{key}.customPageHeaders", "an object")
        raw["custom_page_headers"] = {str(k): str(v) for k, v in headers.items()}
    return raw


def _as_rebase(key: str, value: Any) -> RebasePolicy:
    if isinstance(value, RebaseMapping):
        return value
    if isinstance(value, bool):
        return RebaseMapping() if value else False
    if callable(value):
        return value
    if isinstance(value, Mapping):
        raw = dict(value)
        unknown = sorted(set(raw) - {K_FROM, K_TO})
        if unknown:
            raise ConfigError(f'"{key}.{unknown[0]}" is not allowed')
        return RebaseMapping(
            from_path=_as_str(f"{key}.from", raw[K_FROM]) if raw.get(K_FROM) is not None else None,
            to_path=_as_str(f"{key}.to", raw[K_TO]) if raw.get(K_TO) is not None else None,
        )
    raise _fail(key, "an object, a callable or a boolean")


def _as_target(key: str, value: Any) -> TargetPaths:
    if isinstance(value, TargetPaths):
        return value
    if isinstance(value, (str, os.PathLike)):
        target = _as_str(key, value)
        if target.endswith(".css"):
            return TargetPaths(css=target)
        return TargetPaths(html=target)
    if isinstance(value, Mapping):
        raw = dict(value)
        unknown = sorted(set(raw) - {K_CSS, K_HTML, K_UNCRITICAL})
        if unknown:
            raise ConfigError(f'"{key}.{unknown[0]}" is not allowed')
        return TargetPaths(
            **{name: _as_str(f"{key}.{name}", raw[name]) for name in raw if raw[name] is not None}
        )
    raise _fail(key, "a string or an object")


class _Field(NamedTuple):
    name: str
    coerce: Callable[[str, Any], Any]


FIELDS: Tuple[_Field, ...] = (
    _Field(K_HTML, _as_str),
    _Field(K_SRC, _as_src),
    _Field(K_CSS, _as_str_tuple),
    _Field(K_BASE, _as_str),
    _Field(K_FOLDER, _as_str),
    _Field(K_STRICT, _as_bool),
    _Field(K_IGNORE_INLINED_STYLES, _as_bool),
    _Field(K_EXTRACT, _as_bool),
    _Field(K_INLINE_IMAGES, _as_bool),
    _Field(K_POSTPROCESS, _as_postprocess),
    _Field(K_IGNORE, _as_ignore),
    _Field(K_WIDTH, _as_int),
    _Field(K_HEIGHT, _as_int),
    _Field(K_DIMENSIONS, _as_dimensions),
    _Field(K_MINIFY, _as_bool),
    _Field(K_INLINE, _as_inline),
    _Field(K_MAX_IMAGE_FILE_SIZE, _as_int),
    _Field(K_INCLUDE, _as_matchers),
    _Field(K_CONCURRENCY, _as_concurrency),
    _Field(K_USER, _as_str),
    _Field(K_PASS, _as_str),
    _Field(K_REQUEST, _as_request),
    _Field(K_RENDER, _as_render),
    _Field(K_REBASE, _as_rebase),
    _Field(K_TARGET, _as_target),
    _Field(K_ASSET_PATHS, _as_str_tuple),
    _Field(K_USER_AGENT, _as_str),
    _Field(K_PATH_PREFIX, _as_str),
    _Field(K_TIMEOUT, _as_int),
)

_FIELDS_BY_NAME = {entry.name: entry for entry in FIELDS}


def get_options(options: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> CriticalOptions:
    """Validate raw options and return the frozen ``CriticalOptions`` value."""
    if isinstance(options, CriticalOptions):
        return replace(options, **kwargs) if kwargs else options

    merged: Dict[str, Any] = {}
    for key, value in {**dict(options or {}), **kwargs}.items():
        name = _canonical(str(key))
        if name not in _FIELDS_BY_NAME:
            raise ConfigError(f'"{key}" is not allowed')
        if value is None:
            continue
        merged[name] = _FIELDS_BY_NAME[name].coerce(key, value)

    has_html = merged.get(K_HTML) is not None
    has_src = merged.get(K_SRC) is not None
    if has_html == has_src:
        if has_html:
            raise ConfigError('"options" contains a conflict between exclusive peers [html, src]')
        raise ConfigError('"options" must contain at least one of [html, src]')

    width = merged.get(K_WIDTH, DEFAULT_WIDTH)
    height = merged.get(K_HEIGHT, DEFAULT_HEIGHT)
    dimensions = merged.get(K_DIMENSIONS) or (Dimension(width, height),)
    merged[K_DIMENSIONS] = tuple(sorted(dimensions, key=lambda dim: dim.width))

    minify = merged.get(K_MINIFY, True)
    max_image = merged.get(K_MAX_IMAGE_FILE_SIZE, DEFAULT_MAX_IMAGE_FILE_SIZE)
    include = merged.get(K_INCLUDE, ())

    render_raw = dict(merged.get(K_RENDER, {}))
    render_fields = {
        "timeout": render_raw.pop(K_TIMEOUT, merged.get(K_TIMEOUT, DEFAULT_TIMEOUT_MS)),
        "force_include": render_raw.pop("force_include", include),
        "max_embedded_base64_length": render_raw.pop("max_embedded_base64_length", max_image),
        "keep_larger_media_queries": render_raw.pop("keep_larger_media_queries", False),
        "custom_page_headers": render_raw.pop("custom_page_headers", {}),
    }
    merged[K_RENDER] = RenderOptions(extra=render_raw, **render_fields)

    inline = merged.get(K_INLINE, False)
    if inline:
        inline_fields: Dict[str, Any] = {
            K_MINIFY: minify,
            K_BASE_PATH: merged.get(K_BASE) or os.getcwd(),
        }
        if isinstance(inline, dict):
            inline_fields.update(inline)
        merged[K_INLINE] = InlineOptions(**inline_fields)
    else:
        merged[K_INLINE] = None

    if merged.get(K_EXTRACT) and merged[K_INLINE] is None:
        logger.warning("The extract option only changes the output together with inline")

    target = merged.get(K_TARGET)
    if target is not None and target.uncritical:
        merged[K_EXTRACT] = True

    if K_CONCURRENCY not in merged and DEFAULT_CONCURRENCY > 0:
        merged[K_CONCURRENCY] = DEFAULT_CONCURRENCY

    value = CriticalOptions(**merged)
    logger.debug("Options: %s", replace(value, password="***" if value.password else None))
    return value
