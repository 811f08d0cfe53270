import re

import pytest

from critical.core.errors import ConfigError
from critical.workflows.models import Dimension, InlineAsset
from critical.workflows.options import FIELDS, InlineOptions, RebaseMapping, TargetPaths, get_options


def test_defaults() -> None:
    options = get_options(html="<html></html>")

    assert options.width == 1300
    assert options.height == 900
    assert options.dimensions == (Dimension(1300, 900),)
    assert options.minify is True
    assert options.inline is None
    assert options.strict is False
    assert options.render.timeout == 30000
    assert options.max_image_file_size == 10240
    assert options.rebase == RebaseMapping()


def test_html_and_src_are_exclusive() -> None:
    with pytest.raises(ConfigError, match="conflict between exclusive peers"):
        get_options(html="<html></html>", src="index.html")
    with pytest.raises(ConfigError, match="at least one of"):
        get_options(width=100)


def test_unknown_key_is_rejected() -> None:
    with pytest.raises(ConfigError) as excinfo:
        get_options(html="<html></html>", colour="red")

    assert '"colour" is not allowed' in str(excinfo.value)
    assert isinstance(excinfo.value, ValueError)


def test_camel_case_aliases() -> None:
    options = get_options(
        {
            "html": "<html></html>",
            "ignoreInlinedStyles": True,
            "inlineImages": "true",
            "maxImageFileSize": "2048",
            "pass": "secret",
            "assetPaths": "static",
            "penthouse": {"forceInclude": [".keep"], "timeout": 1000},
        }
    )

    assert options.ignore_inlined_styles is True
    assert options.inline_images is True
    assert options.max_image_file_size == 2048
    assert options.password == "secret"
    assert options.asset_paths == ("static",)
    assert options.render.force_include == (".keep",)
    assert options.render.timeout == 1000
    assert options.render.max_embedded_base64_length == 2048


def test_type_errors_name_the_field() -> None:
    with pytest.raises(ConfigError, match='"width" must be a number'):
        get_options(html="<html></html>", width="wide")
    with pytest.raises(ConfigError, match='"strict" must be a boolean'):
        get_options(html="<html></html>", strict="maybe")


def test_dimensions_sorted_by_width() -> None:
    options = get_options(
        html="<html></html>",
        dimensions=[{"width": 1300, "height": 900}, "320x480", {"width": 768, "height": 1024}],
    )

    assert [dimension.width for dimension in options.dimensions] == [320, 768, 1300]


def test_render_rejects_internal_keys() -> None:
    with pytest.raises(ConfigError, match='"penthouse.url" is not allowed'):
        get_options(html="<html></html>", penthouse={"url": "https://example.com"})


def test_target_string_and_uncritical_forces_extract() -> None:
    assert get_options(html="<html></html>", target="out/critical.css").target == TargetPaths(css="out/critical.css")
    assert get_options(html="<html></html>", target="out/index.html").target == TargetPaths(html="out/index.html")

    options = get_options(html="<html></html>", target={"uncritical": "out/rest.css"})
    assert options.extract is True


def test_inline_options() -> None:
    options = get_options(html="<html></html>", inline=True, minify=False, base="/srv/site")
    assert options.inline == InlineOptions(minify=False, base_path="/srv/site")

    options = get_options(html="<html></html>", inline={"strategy": "swap", "replaceStylesheets": "false"})
    assert options.inline.strategy == "swap"
    assert options.inline.replace_stylesheets is False

    options = get_options(html="<html></html>", inline={"replaceStylesheets": "/rest.css"})
    assert options.inline.replace_stylesheets == ("/rest.css",)

    with pytest.raises(ConfigError, match="strategy"):
        get_options(html="<html></html>", inline={"strategy": "later"})


def test_ignore_list_applies_everywhere() -> None:
    pattern = re.compile("^\\.footer")
    options = get_options(html="<html></html>", ignore=["@font-face", pattern])

    assert options.ignore.atrule == ("@font-face", pattern)
    assert options.ignore.rule == ("@font-face", pattern)
    assert options.ignore.decl == ("@font-face", pattern)

    options = get_options(html="<html></html>", ignore={"decl": "color"})
    assert options.ignore.decl == ("color",)
    assert options.ignore.rule == ()


def test_rebase_forms() -> None:
    assert get_options(html="x", rebase=False).rebase is False
    assert get_options(html="x", rebase={"from": "/a.css", "to": "/b/"}).rebase == RebaseMapping("/a.css", "/b/")

    def to_cdn(asset):
        return f"https://cdn.example.com/{asset.relative_path}"

    assert get_options(html="x", rebase=to_cdn).rebase is to_cdn


def test_src_bytes_become_inline_asset() -> None:
    options = get_options(src=b"<html></html>")
    assert options.src == InlineAsset(b"<html></html>")


def test_concurrency_zero_means_unbounded() -> None:
    assert get_options(html="x", concurrency=0).concurrency is None
    assert get_options(html="x", concurrency=2).concurrency == 2
    with pytest.raises(ConfigError):
        get_options(html="x", concurrency=-1)


def test_request_options() -> None:
    options = get_options(
        html="x",
        request={"method": "GET", "headers": {"X-Test": 1}, "followRedirect": False, "https": {"rejectUnauthorized": False}},
    )

    assert options.request.method == "get"
    assert options.request.headers == {"X-Test": "1"}
    assert options.request.follow_redirects is False
    assert options.request.verify_ssl is False


def test_every_field_has_a_coercer() -> None:
    names = [entry.name for entry in FIELDS]
    assert len(names) == len(set(names))
    assert all(callable(entry.coerce) for entry in FIELDS)
