import asyncio
from pathlib import Path

import pytest

from critical.workflows import assembler
from critical.workflows.asset_fetch import AssetFetcher
from critical.workflows.assembler import CriticalResult, assemble, choose_replacements, post_process
from critical.workflows.context import RunContext
from critical.workflows.models import Document, LocalAsset, StylesheetRef
from critical.workflows.options import get_options

SOURCE_CSS = ".a{color:red}.b{color:blue}"

PAGE = b"""<html><head><link rel="stylesheet" href="css/main.css"></head><body><p class="a">x</p></body></html>"""


def _document(css: str = SOURCE_CSS) -> Document:
    return Document(
        source=LocalAsset("/srv/site/index.html"),
        contents=PAGE,
        path="/srv/site/index.html",
        virtual_path="/index.html",
        cwd="/srv/site",
        stylesheets=(StylesheetRef("css/main.css"),),
        css=css,
    )


def _choose(options, result=None):
    result = result or CriticalResult(css=".a{color:red}", html="", source_css=SOURCE_CSS)
    return asyncio.run(choose_replacements(_document(), result, options))


def test_uncritical_is_computed_once(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []

    def fake_extract(css: str, critical: str) -> str:
        calls.append((css, critical))
        return ".b{color:blue}"

    monkeypatch.setattr(assembler, "extract_uncritical", fake_extract)
    result = CriticalResult(css=".a{color:red}", html="", source_css=SOURCE_CSS)

    assert calls == []
    assert result.uncritical == ".b{color:blue}"
    assert result.uncritical == ".b{color:blue}"
    assert calls == [(SOURCE_CSS, ".a{color:red}")]


def test_uncritical_without_source_css() -> None:
    assert CriticalResult(css=".a{}", html="").uncritical == ""


def test_replacements_from_callable() -> None:
    seen = []

    def replace(document, uncritical):
        seen.append(uncritical)
        return "/rest.css"

    async def replace_async(document, uncritical):
        return ["/a.css", "/b.css"]

    assert _choose(get_options(html="x", inline={"replaceStylesheets": replace})) == ("/rest.css",)
    assert seen == [".b{color:blue}"]
    assert _choose(get_options(html="x", inline={"replaceStylesheets": replace_async})) == ("/a.css", "/b.css")


def test_replacements_explicit_value_wins() -> None:
    options = get_options(html="x", inline={"replaceStylesheets": ["/rest.css"]}, target={"uncritical": "rest.css"})

    assert _choose(options) == ("/rest.css",)
    assert _choose(get_options(html="x", inline={"replaceStylesheets": False})) is False


def test_replacements_empty_when_nothing_is_left() -> None:
    options = get_options(html="x", inline=True, extract=True)
    everything = CriticalResult(css=SOURCE_CSS, html="", source_css=SOURCE_CSS)

    assert _choose(options, everything) == ()


def test_replacements_point_at_uncritical_target() -> None:
    options = get_options(html="x", inline=True, base="/srv/site", target={"uncritical": "css/rest.css"})

    assert _choose(options) == ("/css/rest.css",)


def test_replacements_default_keeps_links() -> None:
    assert _choose(get_options(html="x", inline=True)) is None
    outside = get_options(html="x", inline=True, base="/srv/site", target={"uncritical": "../rest.css"})
    assert _choose(outside) is None


def _post_process(css: str, options) -> str:
    async def run():
        async with RunContext(fetcher=AssetFetcher()) as ctx:
            return await post_process(css, _document(), options, ctx)

    return asyncio.run(run())


def test_post_process_order() -> None:
    steps = []

    def recolor(css: str) -> str:
        steps.append(css)
        return css.replace("red", "blue")

    async def add_rule(css: str) -> str:
        steps.append(css)
        return css + ".z{top:0}"

    options = get_options(html="x", ignore=[".b"], postprocess=[recolor, add_rule])

    assert _post_process(SOURCE_CSS, options) == ".a{color:blue}.z{top:0}"
    # ignore runs before the custom steps
    assert steps == [".a{color:red}", ".a{color:blue}"]


def test_post_process_prettify_when_not_minified() -> None:
    assert _post_process(".a{color:red}", get_options(html="x", minify=False)) == ".a {\n  color: red;\n}\n"


def test_post_process_inlines_images(tmp_path: Path) -> None:
    (tmp_path / "img").mkdir()
    (tmp_path / "img" / "dot.svg").write_text("<svg/>", encoding="utf-8")
    options = get_options(html="x", base=str(tmp_path), inline_images=True)

    css = _post_process(".a{background:url(img/dot.svg)}", options)

    assert css == ".a{background:url(data:image/svg+xml;base64,PHN2Zy8+)}"


def test_assemble_inlines_html() -> None:
    options = get_options(html="x", inline=True)

    async def run():
        async with RunContext(fetcher=AssetFetcher()) as ctx:
            return await assemble(_document(), [".a{color:red}", ".a{color:red}"], options, ctx)

    result = asyncio.run(run())

    assert result.css == ".a{color:red}"
    assert "<style>.a{color:red}</style>" in result.html
    assert 'media="print"' in result.html
    assert result.uncritical == ".b{color:blue}"
