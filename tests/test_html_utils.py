from bs4 import BeautifulSoup

from critical.workflows.html_utils import (
    decode_html,
    get_stylesheet_hrefs,
    get_stylesheet_refs,
    inline_critical,
    unique_refs,
)
from critical.workflows.models import StylesheetRef

PAGE = """<!DOCTYPE html>
<html>
<head>
  <link rel="stylesheet" href="css/a.css">
  <link rel="preload" as="style" href="css/b.css">
  <link rel="stylesheet" href="css/print.css" media="print">
  <link rel="stylesheet" href="css/lazy.css" media="print" onload="this.media='all'">
  <link rel="stylesheet" href="css/wide.css" media="(min-width: 900px)">
  <link rel="stylesheet" href="data:text/css;base64,Ym9keXttYXJnaW46MH0=">
  <link rel="icon" href="favicon.ico">
  <style>@import url("css/imported.css"); .inline { color: red; }</style>
  <noscript><link rel="stylesheet" href="css/noscript.css"></noscript>
</head>
<body><p>hi</p></body>
</html>
"""


def test_stylesheet_refs_in_document_order() -> None:
    refs = get_stylesheet_refs(PAGE)

    values = [ref.value for ref in refs]
    assert values[:4] == ["css/a.css", "css/b.css", "css/lazy.css", "css/wide.css"]
    assert values[4] == b"body{margin:0}"
    assert values[5] == "css/imported.css"
    assert isinstance(values[6], bytes) and b".inline" in values[6]
    assert "css/print.css" not in values
    assert "css/noscript.css" not in values
    assert refs[3].media == "(min-width: 900px)"
    assert refs[0].media == ""


def test_ignore_inlined_styles() -> None:
    refs = get_stylesheet_refs(PAGE, ignore_inlined_styles=True)

    assert all(not ref.inline or ref.value == b"body{margin:0}" for ref in refs)
    assert "css/imported.css" in get_stylesheet_hrefs(PAGE, ignore_inlined_styles=True)


def test_unique_refs_keeps_first() -> None:
    refs = [StylesheetRef("a.css"), StylesheetRef("a.css"), StylesheetRef("a.css", "print and (color)")]

    assert unique_refs(refs) == [StylesheetRef("a.css"), StylesheetRef("a.css", "print and (color)")]


def test_decode_html_falls_back_for_legacy_charsets() -> None:
    assert decode_html("<p>ok</p>") == "<p>ok</p>"
    assert decode_html("<p>café</p>".encode("utf-8")) == "<p>café</p>"
    assert "caf" in decode_html("<p>café</p>".encode("latin-1"))


def test_inline_critical_defers_links() -> None:
    html = inline_critical(PAGE, ".a{color:red}")
    soup = BeautifulSoup(html, "html.parser")

    style = soup.head.find("style")
    assert style.string == ".a{color:red}"
    assert style.find_next_sibling("link")["href"] == "css/a.css"
    deferred = soup.head.find("link", href="css/a.css")
    assert deferred["media"] == "print"
    assert deferred["onload"] == "this.media='all'"
    assert deferred.find_next_sibling("noscript").find("link")["href"] == "css/a.css"


def test_inline_critical_replaces_links() -> None:
    html = inline_critical(PAGE, ".a{}", replace_stylesheets=["/rest.css"], strategy="swap")
    soup = BeautifulSoup(html, "html.parser")

    hrefs = [link["href"] for link in soup.find_all("link") if link.find_parent("noscript") is None]
    assert "css/a.css" not in hrefs
    replacement = soup.head.find("link", href="/rest.css")
    assert replacement["rel"] == ["preload"]
    assert replacement["as"] == "style"


def test_inline_critical_keeps_links_when_disabled() -> None:
    html = inline_critical(PAGE, ".a{}", replace_stylesheets=False)
    soup = BeautifulSoup(html, "html.parser")

    link = soup.head.find("link", href="css/a.css")
    assert "onload" not in link.attrs


def test_inline_critical_empty_replacement_drops_links() -> None:
    html = inline_critical(PAGE, ".a{}", replace_stylesheets=[])
    soup = BeautifulSoup(html, "html.parser")

    assert soup.find("link", href="css/a.css") is None
    assert soup.find("style") is not None


def test_inline_critical_body_strategy_and_missing_head() -> None:
    html = inline_critical('<html><body><link rel="stylesheet" href="a.css"><p>x</p></body></html>', "p{}", strategy="body")
    soup = BeautifulSoup(html, "html.parser")

    assert soup.head.find("style").string == "p{}"
    assert soup.body.find_all(["link", "p"])[-1]["href"] == "a.css"
