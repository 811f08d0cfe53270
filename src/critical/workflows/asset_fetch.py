"""Byte-level access to local files and remote resources."""

from __future__ import annotations

import asyncio
import base64
import logging
import os
from typing import Any, Dict, Optional, Tuple

import aiohttp

from ..core.errors import FetchError
from .critical_config import DEFAULT_USER_AGENT, TOLERATED_STATUS_CODES
from .path_utils import is_remote, strip_query, url_resolve

logger = logging.getLogger(__name__)


def token(user: str, password: str) -> str:
    """Base64 ``user:password`` pair used for RFC 2617 basic auth."""
    return base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")


class AssetFetcher:
    """Reads assets for a single ``generate`` call.

    Owns one ``aiohttp.ClientSession`` which is created lazily and closed by
    ``close()`` (or by leaving the ``async with`` block).
    """

    def __init__(
        self,
        *,
        user: Optional[str] = None,
        password: Optional[str] = None,
        user_agent: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        method: Optional[str] = None,
        follow_redirects: bool = True,
        verify_ssl: bool = True,
        timeout: Optional[float] = None,
    ) -> None:
        self.user = user
        self.password = password
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.extra_headers = dict(headers or {})
        self.method = (method or "").lower() or None
        self.follow_redirects = follow_redirects
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_options(cls, options: Any) -> "AssetFetcher":
        request = options.request
        return cls(
            user=options.user,
            password=options.password,
            user_agent=options.user_agent,
            headers=request.headers,
            method=request.method,
            follow_redirects=request.follow_redirects,
            verify_ssl=request.verify_ssl,
            timeout=request.timeout,
        )

    async def __aenter__(self) -> "AssetFetcher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @property
    def headers(self) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        headers.update(self.extra_headers)
        if self.user and self.password:
            headers["Authorization"] = f"Basic {token(self.user, self.password)}"
        return headers

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=None if self.verify_ssl else False)
            self._session = aiohttp.ClientSession(
                connector=connector,
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def _request(self, method: str, url: str) -> Tuple[int, bytes, str]:
        session = self._get_session()
        logger.debug("Fetching resource: %s (%s)", url, method.upper())
        async with session.request(method.upper(), url, allow_redirects=self.follow_redirects) as resp:
            body = b"" if method == "head" else await resp.read()
            return resp.status, body, str(resp.url)

    async def _request_with_fallback(self, method: str, url: str) -> Tuple[int, bytes, str]:
        """Protocol-relative URLs are tried over https first and over http once on failure."""
        if not url.startswith("//"):
            return await self._request(method, url)
        secure = url_resolve("https://te.st", url)
        try:
            return await self._request(method, secure)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.debug("%s - trying again over http", exc)
            return await self._request(method, url_resolve("http://te.st", url))

    async def fetch(self, href: str) -> bytes:
        """Return the bytes behind ``href``.

        Remote 403/404 answers come back as ``b""``; other non-2xx statuses and
        transport failures raise ``FetchError``.
        """
        if not is_remote(href):
            return await self.read(href)
        try:
            status, body, _ = await self._request_with_fallback("get", href)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise FetchError(href, reason=str(exc) or exc.__class__.__name__) from exc
        if 200 <= status < 300:
            return body
        if status in TOLERATED_STATUS_CODES:
            logger.warning("%s answered %s, using empty content", href, status)
            return b""
        raise FetchError(href, status=status)

    async def fetch_document(self, url: str) -> Tuple[bytes, str]:
        """GET an HTML document. Returns the body and the final URL after redirects."""
        try:
            status, body, final_url = await self._request_with_fallback("get", url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise FetchError(url, reason=str(exc) or exc.__class__.__name__) from exc
        if 200 <= status < 300:
            return body, final_url
        if status in TOLERATED_STATUS_CODES:
            logger.warning("%s answered %s, using empty content", url, status)
            return b"", final_url
        raise FetchError(url, status=status)

    async def exists(self, url: str) -> bool:
        """Probe a remote URL (HEAD unless a request method is configured); 2xx means present."""
        try:
            status, _, _ = await self._request_with_fallback(self.method or "head", url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.debug("%s failed: %s", url, exc)
            return False
        return 200 <= status < 300

    @staticmethod
    def read_local(path: str) -> bytes:
        if not os.path.exists(path):
            path = strip_query(path)
        with open(path, "rb") as fh:
            return fh.read()

    async def read(self, path: str) -> bytes:
        """``read_local`` on a worker thread so the event loop keeps running."""
        return await asyncio.to_thread(self.read_local, path)
