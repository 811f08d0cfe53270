import asyncio
import base64
import threading
from pathlib import Path

import pytest
from aiohttp import web

from critical.core.errors import FetchError
from critical.workflows.asset_fetch import AssetFetcher, token
from critical.workflows.options import get_options


def _app() -> web.Application:
    async def stylesheet(request: web.Request) -> web.Response:
        return web.Response(text="a{color:red}", content_type="text/css")

    async def forbidden(request: web.Request) -> web.Response:
        return web.Response(status=403)

    async def broken(request: web.Request) -> web.Response:
        return web.Response(status=500)

    async def echo(request: web.Request) -> web.Response:
        return web.json_response(
            {
                "user_agent": request.headers.get("User-Agent"),
                "authorization": request.headers.get("Authorization"),
                "method": request.method,
            }
        )

    async def moved(request: web.Request) -> web.Response:
        raise web.HTTPFound("/css/a.css")

    app = web.Application()
    app.router.add_get("/css/a.css", stylesheet)
    app.router.add_get("/forbidden.css", forbidden)
    app.router.add_get("/broken.css", broken)
    app.router.add_route("*", "/echo", echo)
    app.router.add_get("/moved", moved)
    return app


async def _with_server(scenario):
    runner = web.AppRunner(_app())
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    host, port = runner.addresses[0][:2]
    try:
        return await scenario(f"http://{host}:{port}")
    finally:
        await runner.cleanup()


def test_token() -> None:
    assert token("user", "pass") == base64.b64encode(b"user:pass").decode("ascii")


def test_fetch_returns_body_and_tolerates_403() -> None:
    async def scenario(root: str):
        async with AssetFetcher() as fetcher:
            body = await fetcher.fetch(f"{root}/css/a.css")
            missing = await fetcher.fetch(f"{root}/missing.css")
            forbidden = await fetcher.fetch(f"{root}/forbidden.css")
        return body, missing, forbidden

    body, missing, forbidden = asyncio.run(_with_server(scenario))

    assert body == b"a{color:red}"
    assert missing == b""
    assert forbidden == b""


def test_fetch_raises_on_server_error() -> None:
    async def scenario(root: str):
        async with AssetFetcher() as fetcher:
            await fetcher.fetch(f"{root}/broken.css")

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(_with_server(scenario))

    assert excinfo.value.status == 500
    assert "broken.css" in str(excinfo.value)


def test_fetch_wraps_transport_errors() -> None:
    async def scenario():
        async with AssetFetcher(timeout=2) as fetcher:
            await fetcher.fetch("http://127.0.0.1:1/a.css")

    with pytest.raises(FetchError) as excinfo:
        asyncio.run(scenario())

    assert excinfo.value.status is None


def test_exists_uses_head_and_requires_2xx() -> None:
    async def scenario(root: str):
        async with AssetFetcher() as fetcher:
            return (
                await fetcher.exists(f"{root}/css/a.css"),
                await fetcher.exists(f"{root}/missing.css"),
                await fetcher.exists("http://127.0.0.1:1/a.css"),
            )

    found, missing, unreachable = asyncio.run(_with_server(scenario))

    assert found is True
    assert missing is False
    assert unreachable is False


def test_headers_carry_auth_and_user_agent() -> None:
    options = get_options(html="<html></html>", user="jane", password="secret", user_agent="critical-test")

    async def scenario(root: str):
        async with AssetFetcher.from_options(options) as fetcher:
            return await fetcher.fetch(f"{root}/echo")

    body = asyncio.run(_with_server(scenario))

    assert b"critical-test" in body
    assert f"Basic {token('jane', 'secret')}".encode("ascii") in body


def test_fetch_document_follows_redirects() -> None:
    async def scenario(root: str):
        async with AssetFetcher() as fetcher:
            return await fetcher.fetch_document(f"{root}/moved")

    body, final_url = asyncio.run(_with_server(scenario))

    assert body == b"a{color:red}"
    assert final_url.endswith("/css/a.css")


def test_read_local_strips_query(tmp_path: Path) -> None:
    css = tmp_path / "a.css"
    css.write_text("b{}", encoding="utf-8")

    assert AssetFetcher.read_local(f"{css}?v=1") == b"b{}"


def test_local_reads_run_off_the_loop_thread(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    css = tmp_path / "a.css"
    css.write_text("b{}", encoding="utf-8")
    threads = []
    read_local = AssetFetcher.read_local

    def tracking_read(path: str) -> bytes:
        threads.append(threading.get_ident())
        return read_local(path)

    monkeypatch.setattr(AssetFetcher, "read_local", staticmethod(tracking_read))

    assert asyncio.run(AssetFetcher().fetch(str(css))) == b"b{}"
    assert threads and threads[0] != threading.get_ident()
