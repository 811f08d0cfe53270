from __future__ import annotations

import logging
import re
import sys
from typing import Any, Dict, List, Optional, Union

import typer

from .workflows.critical import generate_sync

app = typer.Typer(add_help_option=False, no_args_is_help=False)

_REGEX_ARG_RE = re.compile(r"^/(.+)/([gimsuy]*)$")
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


def _minimal_help() -> str:
    return """Critical (critical-path CSS extraction)

Usage:
  critical <input> [options]
  cat index.html | critical [options]

Input is an HTML file path or a URL. Without one, HTML is read from stdin.

Options:
  -b, --base <DIR>           Base directory in which the source and destination are to be written.
  -c, --css <FILE>           Stylesheet(s) to use instead of the ones linked in the document (globs ok).
  -w, --width <PX>           Viewport width (default 1300).
  -h, --height <PX>          Viewport height (default 900).
  --dimensions <WxH,...>     Several viewports, e.g. 320x480,1300x900.
  --minify / --no-minify     Minify the critical css (default on).
  -i, --inline               Inline critical css into the html and print the html.
  -e, --extract              Remove the inlined styles from the referenced stylesheets.
  --inline-images            Embed images below --max-image-file-size as data URIs.
  --max-image-file-size <B>  Byte limit for --inline-images (default 10240).
  --inline-strategy <NAME>   Deferral of the remaining stylesheets: media, swap or body.
  --ignore <RULE>            RegExp (/.../flags), @type or selector to ignore. Repeatable.
  --include <RULE>           RegExp (/.../flags) or selector to always include. Repeatable.
  --strict                   Fail on missing css and css parse errors.
  --path-prefix <PREFIX>     Prefix for every rebased asset path.
  --asset-paths <DIR|URL>    Extra directories or URLs to search assets in. Repeatable.
  --user <USER>              Basic auth user.
  --pass <PASS>              Basic auth password.
  --ua, --user-agent <UA>    User agent for page and asset requests.
  --timeout <MS>             Render timeout per viewport (default 30000).
  --concurrency <N>          Viewports rendered at the same time (default all).
  -t, --target <FILE>        Output file(s): .css receives the critical css, anything else the html.
  --target-css <FILE>        Write the critical css here.
  --target-html <FILE>       Write the html here.
  --target-uncritical <FILE> Write the uncritical css here.
  --verbose                  Debug logging on stderr.
  --help                     Show this help.

Environment:
  CRITICAL_RENDER_TIMEOUT, CRITICAL_MAX_IMAGE_FILE_SIZE, CRITICAL_CONCURRENCY,
  CRITICAL_USER_AGENT, CRITICAL_PLAYWRIGHT_HEADED (also read from .env)
"""


def _matcher(value: str) -> Union[str, "re.Pattern[str]"]:
    """``/pattern/flags`` becomes a compiled regex, anything else stays a literal."""
    match = _REGEX_ARG_RE.match(value)
    if not match:
        return value
    flags = 0
    for flag in match.group(2):
        flags |= _REGEX_FLAGS.get(flag, 0)
    return re.compile(match.group(1), flags)


def _targets(
    target: Optional[List[str]],
    target_css: Optional[str],
    target_html: Optional[str],
    target_uncritical: Optional[str],
) -> Dict[str, str]:
    paths: Dict[str, str] = {}
    for item in target or []:
        key = "css" if item.endswith(".css") else "html"
        paths.setdefault(key, item)
    if target_css:
        paths["css"] = target_css
    if target_html:
        paths["html"] = target_html
    if target_uncritical:
        paths["uncritical"] = target_uncritical
    return paths


def _read_stdin() -> str:
    if sys.stdin is None or sys.stdin.isatty():
        return ""
    return sys.stdin.read()


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    typer.echo(_minimal_help(), err=True)
    raise typer.Exit(code=1)


@app.command(add_help_option=False)
def main(
    input: Optional[str] = typer.Argument(None, help="HTML file path or URL."),
    help: bool = typer.Option(False, "--help", is_eager=True, help="Show help."),
    base: Optional[str] = typer.Option(None, "--base", "-b"),
    css: Optional[List[str]] = typer.Option(None, "--css", "-c"),
    width: Optional[int] = typer.Option(None, "--width", "-w"),
    height: Optional[int] = typer.Option(None, "--height", "-h"),
    dimensions: Optional[str] = typer.Option(None, "--dimensions"),
    minify: bool = typer.Option(True, "--minify/--no-minify"),
    inline: bool = typer.Option(False, "--inline", "-i"),
    extract: bool = typer.Option(False, "--extract", "-e"),
    inline_images: bool = typer.Option(False, "--inline-images"),
    max_image_file_size: Optional[int] = typer.Option(None, "--max-image-file-size"),
    inline_strategy: Optional[str] = typer.Option(None, "--inline-strategy"),
    ignore: Optional[List[str]] = typer.Option(None, "--ignore"),
    include: Optional[List[str]] = typer.Option(None, "--include"),
    strict: bool = typer.Option(False, "--strict"),
    path_prefix: Optional[str] = typer.Option(None, "--path-prefix"),
    asset_paths: Optional[List[str]] = typer.Option(None, "--asset-paths"),
    user: Optional[str] = typer.Option(None, "--user"),
    password: Optional[str] = typer.Option(None, "--pass"),
    user_agent: Optional[str] = typer.Option(None, "--user-agent", "--ua"),
    timeout: Optional[int] = typer.Option(None, "--timeout"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency"),
    target: Optional[List[str]] = typer.Option(None, "--target", "-t"),
    target_css: Optional[str] = typer.Option(None, "--target-css"),
    target_html: Optional[str] = typer.Option(None, "--target-html"),
    target_uncritical: Optional[str] = typer.Option(None, "--target-uncritical"),
    verbose: bool = typer.Option(False, "--verbose"),
) -> None:
    if help:
        typer.echo(_minimal_help())
        raise typer.Exit(code=0)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        stream=sys.stderr,
    )

    options: Dict[str, Any] = {
        "base": base,
        "css": css or None,
        "width": width,
        "height": height,
        "dimensions": dimensions,
        "minify": minify,
        "extract": extract,
        "inline_images": inline_images,
        "max_image_file_size": max_image_file_size,
        "include": [_matcher(value) for value in include] if include else None,
        "ignore": [_matcher(value) for value in ignore] if ignore else None,
        "strict": strict,
        "path_prefix": path_prefix,
        "asset_paths": asset_paths or None,
        "user": user,
        "pass": password,
        "user_agent": user_agent,
        "timeout": timeout,
        "concurrency": concurrency,
        "target": _targets(target, target_css, target_html, target_uncritical) or None,
    }
    if inline:
        options["inline"] = {"strategy": inline_strategy} if inline_strategy else True

    if input:
        options["src"] = input
    else:
        html = _read_stdin()
        if not html.strip():
            _fail("Missing input. Pass an HTML file, a URL or pipe HTML via stdin.")
        options["html"] = html

    try:
        result = generate_sync(options)
    except Exception as exc:
        _fail(str(exc) or exc.__class__.__name__)

    if inline:
        output = result.html
    elif extract:
        output = result.uncritical
    else:
        output = result.css
    sys.stdout.write(output)


if __name__ == "__main__":  # pragma: no cover
    app()
