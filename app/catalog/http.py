"""HTTP access for brand sites."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser

import httpx

from app.catalog.constants import FETCH_TIMEOUT_SECONDS, USER_AGENT
from app.catalog.errors import RobotsDisallowed
from app.utils.rate_limit import RateLimiter
from app.utils.retry import retry_async

logger = logging.getLogger(__name__)

ACCEPT_HEADER = "text/html,application/xml,application/json;q=0.9,*/*;q=0.8"


@dataclass(slots=True)
class FetchResult:
    status: int
    text: str
    final_url: str
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status < 400 and bool(self.text)

    def json(self) -> Any | None:
        try:
            return json.loads(self.text)
        except (TypeError, ValueError):
            return None


class CatalogHttpClient:
    """Fetches text from brand sites politely.

    Non-2xx responses are returned as :class:`FetchResult` values; only
    transport failures (after retries) and robots.txt denials raise.
    """

    def __init__(
        self,
        *,
        concurrency: int = 8,
        session: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
        respect_robots: bool = True,
        retry_attempts: int = 2,
    ) -> None:
        self._session = session or httpx.AsyncClient(
            timeout=FETCH_TIMEOUT_SECONDS,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT, "Accept": ACCEPT_HEADER},
        )
        self._semaphore = asyncio.Semaphore(concurrency)
        self._robot_cache: dict[str, RobotFileParser] = {}
        self._robots_text: dict[str, str] = {}
        self._rate_limiter = rate_limiter or RateLimiter()
        self._respect_robots_txt = respect_robots
        self._retry_attempts = max(1, retry_attempts)

    async def close(self) -> None:
        await self._session.aclose()

    async def fetch_text(self, url: str, *, timeout: float | None = None) -> FetchResult:
        await self._respect_robots(url)
        return _result(await self._request("GET", url, timeout=timeout))

    async def post_json(self, url: str, payload: Any, *, timeout: float | None = None) -> FetchResult:
        """POST a JSON body, e.g. a storefront GraphQL query."""
        await self._respect_robots(url)
        return _result(await self._request("POST", url, timeout=timeout, json=payload))

    async def robots_txt(self, origin: str) -> str:
        if origin not in self._robots_text:
            await self._load_robots(origin)
        return self._robots_text.get(origin, "")

    async def _respect_robots(self, url: str) -> None:
        if not self._respect_robots_txt:
            return
        parsed = urlparse(url)
        base = f"{parsed.scheme}://{parsed.netloc}"
        parser = self._robot_cache.get(base) or await self._load_robots(base)
        if parsed.path.endswith("robots.txt"):
            return
        if not parser.can_fetch(USER_AGENT, url):
            raise RobotsDisallowed(f"Blocked by robots.txt: {url}")

    async def _load_robots(self, base: str) -> RobotFileParser:
        parser = RobotFileParser()
        text = ""
        try:
            response = await self._request("GET", f"{base}/robots.txt")
        except httpx.HTTPError as exc:
            logger.debug("robots.txt unavailable for %s: %s", base, exc)
        else:
            if response.status_code < 400:
                text = response.text
        parser.parse(text.splitlines() if text else ["User-agent: *", "Allow: /"])
        self._robot_cache[base] = parser
        self._robots_text[base] = text
        return parser

    async def _request(self, method: str, url: str, *, timeout: float | None = None, **kwargs: Any) -> httpx.Response:
        host = urlparse(url).netloc
        if timeout is not None:
            kwargs["timeout"] = timeout
        async with self._semaphore:
            await self._rate_limiter.wait_for_host(host)
            send = retry_async(attempts=self._retry_attempts)(self._session.request)
            return await send(method, url, **kwargs)


def _result(response: httpx.Response) -> FetchResult:
    return FetchResult(
        status=response.status_code,
        text=response.text,
        final_url=str(response.url),
        headers={key.lower(): value for key, value in response.headers.items()},
    )
