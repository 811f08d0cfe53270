import asyncio
import os
from dataclasses import replace
from pathlib import Path

import pytest

from critical.core.errors import AssetNotFoundError, CssSyntaxError
from critical.workflows.asset_fetch import AssetFetcher
from critical.workflows.context import RunContext
from critical.workflows.models import Document, InlineAsset, LocalAsset, RemoteAsset, StylesheetRef
from critical.workflows.options import get_options
from critical.workflows.stylesheets import (
    get_asset_paths,
    get_stylesheet,
    get_stylesheet_path,
    glob_css,
    rebase_assets,
)


def _site(tmp_path: Path) -> Path:
    (tmp_path / "css").mkdir()
    (tmp_path / "img").mkdir()
    (tmp_path / "css" / "a.css").write_text(".a{background:url(../img/x.png)}", encoding="utf-8")
    (tmp_path / "img" / "x.png").write_bytes(b"\x89PNG\r\n\x1a\n")
    (tmp_path / "index.html").write_text('<link rel="stylesheet" href="css/a.css">', encoding="utf-8")
    return tmp_path


def _document(root: Path) -> Document:
    return Document(
        source=LocalAsset(str(root / "index.html")),
        contents=b"",
        path=str(root / "index.html"),
        virtual_path="/index.html",
        stylesheets=(StylesheetRef("css/a.css"),),
    )


def test_rebase_relative_to_document() -> None:
    css = ".header{background:url(../img/icon.svg)}.b{background:url(../img/a.png?v=1#top)}"

    rebased = rebase_assets(css, "/css/main.css", "/index.html")

    assert "url(img/icon.svg)" in rebased
    assert "url(img/a.png?v=1#top)" in rebased


def test_rebase_skips_data_and_absolute_urls() -> None:
    css = ".a{background:url(data:image/png;base64,AAAA)}.b{background:url(/img/b.png)}"

    assert rebase_assets(css, "/css/main.css", "/blog/index.html") == css


def test_rebase_trailing_slash_targets() -> None:
    rebased = rebase_assets(".a{background:url(img/a.png)}", "/css/", "/blog/")

    assert "url(../css/img/a.png)" in rebased


def test_rebase_with_callable() -> None:
    seen = []

    def to_cdn(asset):
        seen.append(asset)
        return f"https://cdn.example.com{asset.absolute_path}{asset.search}"

    rebased = rebase_assets(".a{background:url(../img/a.png?v=2)}", "/css/main.css", "/index.html", method=to_cdn)

    assert "url(https://cdn.example.com/img/a.png?v=2)" in rebased
    assert seen[0].pathname == "../img/a.png"
    assert seen[0].search == "?v=2"


def test_rebase_without_target_is_identity() -> None:
    assert rebase_assets(".a{background:url(a.png)}", "/css/a.css", "") == ".a{background:url(a.png)}"


def test_rebase_parse_errors() -> None:
    broken = ".a{color:red}\n.b"

    assert rebase_assets(broken, "/css/a.css", "/index.html") == ""
    with pytest.raises(CssSyntaxError) as excinfo:
        rebase_assets(broken, "/css/a.css", "/index.html", strict=True, inlined=True)

    assert "Inlined stylesheet" in str(excinfo.value)


def test_stylesheet_path_branches() -> None:
    document = Document(
        source=LocalAsset("/srv/site/blog/index.html"),
        contents=b"",
        virtual_path="/blog/index.html",
        url="https://example.com/blog/",
    )

    assert get_stylesheet_path(document, InlineAsset(b"a{}"), "") == "/blog/index.html.css"
    assert get_stylesheet_path(document, RemoteAsset("https://example.com/css/a.css"), "") == "/css/a.css"
    assert (
        get_stylesheet_path(document, RemoteAsset("https://cdn.example.com/a.css"), "")
        == "https://cdn.example.com/a.css"
    )
    assert get_stylesheet_path(document, LocalAsset("x"), "../css/a.css") == "/css/a.css"
    assert get_stylesheet_path(document, LocalAsset("x"), "/srv/site/css/b.css", "/srv/site") == "/css/b.css"


def test_stylesheet_path_uses_matching_href() -> None:
    document = Document(
        source=LocalAsset("/srv/site/blog/index.html"),
        contents=b"",
        virtual_path="/blog/index.html",
        stylesheets=(StylesheetRef("https://cdn.example.com/lib/x.css"), StylesheetRef("../css/main.css")),
    )

    assert get_stylesheet_path(document, LocalAsset("x"), "/tmp/elsewhere/main.css") == "/css/main.css"
    # no href shares the basename: the first local href decides the directory
    assert get_stylesheet_path(document, LocalAsset("x"), "/tmp/elsewhere/other.css") == "/css/other.css"


def test_asset_paths_order(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    root = _site(tmp_path)
    (root / "static").mkdir()
    elsewhere = root / "elsewhere"
    elsewhere.mkdir()
    monkeypatch.chdir(elsewhere)
    options = get_options(html="x", base=str(root), asset_paths=["static"])

    paths = asyncio.run(get_asset_paths(_document(root), "css/a.css", options))

    assert paths == [str(root), str(root / "static"), str(elsewhere)]


def test_asset_paths_ignores_inline_refs(tmp_path: Path) -> None:
    options = get_options(html="x", base=str(tmp_path))

    assert asyncio.run(get_asset_paths(_document(tmp_path), b"a{}", options)) == []


def _stylesheet(document: Document, ref, options, media: str = ""):
    async def run():
        async with RunContext(fetcher=AssetFetcher()) as ctx:
            return await get_stylesheet(document, ref, options, ctx, media=media)

    return asyncio.run(run())


def test_get_stylesheet_rebases_to_document(tmp_path: Path) -> None:
    root = _site(tmp_path)
    options = get_options(html="x", base=str(root))

    sheet = _stylesheet(_document(root), "css/a.css", options)

    assert sheet.virtual_path == "/css/a.css"
    assert sheet.href == "css/a.css"
    assert sheet.text == ".a{background:url(img/x.png)}"


def test_get_stylesheet_media_and_rebase_off(tmp_path: Path) -> None:
    root = _site(tmp_path)
    options = get_options(html="x", base=str(root), rebase=False)

    sheet = _stylesheet(_document(root), "css/a.css", options, media="print")

    assert sheet.text == "@media print { .a{background:url(../img/x.png)} }"


def test_get_stylesheet_path_prefix(tmp_path: Path) -> None:
    root = _site(tmp_path)
    options = get_options(html="x", base=str(root), path_prefix="/static")

    sheet = _stylesheet(_document(root), "css/a.css", options)

    assert "url(/static/img/x.png)" in sheet.text


def test_get_stylesheet_rebase_mapping(tmp_path: Path) -> None:
    root = _site(tmp_path)
    (root / "css" / "main.css").write_text(".b{background:url(../img/a.png)}", encoding="utf-8")
    document = replace(_document(root), virtual_path="/blog/post.html")
    options = get_options(html="x", base=str(root), rebase={"from": "/css/main.css", "to": "/index.html"})

    sheet = _stylesheet(document, "css/main.css", options)

    # the mapping wins over the document location
    assert sheet.text == ".b{background:url(img/a.png)}"
    assert _stylesheet(document, "css/main.css", get_options(html="x", base=str(root))).text == (
        ".b{background:url(../img/a.png)}"
    )


def test_get_stylesheet_missing_remote(tmp_path: Path) -> None:
    root = _site(tmp_path)
    unreachable = "http://127.0.0.1:1/missing.css"

    assert _stylesheet(_document(root), unreachable, get_options(html="x", base=str(root))) is None
    with pytest.raises(AssetNotFoundError):
        _stylesheet(_document(root), unreachable, get_options(html="x", base=str(root), strict=True))


def test_get_stylesheet_missing_local_raises(tmp_path: Path) -> None:
    root = _site(tmp_path)

    with pytest.raises(AssetNotFoundError) as excinfo:
        _stylesheet(_document(root), "css/none.css", get_options(html="x", base=str(root)))

    assert excinfo.value.file == "css/none.css"


def test_glob_css(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    root = _site(tmp_path)
    (root / "css" / "b.css").write_text("b{}", encoding="utf-8")
    empty = root / "empty"
    empty.mkdir()
    monkeypatch.chdir(empty)

    files = glob_css(["css/*.css", "plain.css"], str(root))

    assert files == [os.path.join(str(root), "css", "a.css"), os.path.join(str(root), "css", "b.css"), "plain.css"]


def test_glob_css_character_classes(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    root = _site(tmp_path)
    (root / "css" / "b.css").write_text("b{}", encoding="utf-8")
    (root / "css" / "c.css").write_text("c{}", encoding="utf-8")
    monkeypatch.chdir(root / "img")

    assert glob_css(["css/[bc].css", "css/?.css"], str(root)) == [
        os.path.join(str(root), "css", "b.css"),
        os.path.join(str(root), "css", "c.css"),
        os.path.join(str(root), "css", "a.css"),
        os.path.join(str(root), "css", "b.css"),
        os.path.join(str(root), "css", "c.css"),
    ]
    assert glob_css(["css/no-such.css"], str(root)) == ["css/no-such.css"]
