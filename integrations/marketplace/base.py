from __future__ import annotations

import abc
import asyncio
import itertools
import logging
import math
from typing import Any, Optional

import httpx

from integrations.marketplace.browser import BrowserRenderer
from integrations.marketplace.extract import extract_detail, extract_search_results
from integrations.marketplace.models import RawListing
from pipeline.config import Settings
from pipeline.utils.errors import FetchError

logger = logging.getLogger(__name__)

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
)

EMPTY_PAGES_BEFORE_STOP = 2


class SourceFetcher(abc.ABC):
    """Search a marketplace for a term with a static fetch, or a headless render when asked."""

    platform: str
    base_url: str
    referer: str
    page_size: int = 20
    max_pages: int = 5

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        renderer: Optional[BrowserRenderer] = None,
    ) -> None:
        self.settings = settings
        self.timeout_s = settings.fetch_timeout_s
        self.max_retries = max(1, settings.fetch_max_retries)
        self.renderer = renderer
        self._client = client
        self._owns_client = client is None
        self._user_agents = itertools.cycle((settings.user_agent, *USER_AGENTS))

    @abc.abstractmethod
    def search_url(self, term: str, page: int) -> str:
        pass

    async def __aenter__(self) -> "SourceFetcher":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True, timeout=self.timeout_s)
        return self._client

    def _headers(self) -> dict[str, str]:
        return {
            "User-Agent": next(self._user_agents),
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
            "Referer": self.referer,
        }

    async def fetch_html(self, url: str) -> str:
        client = self._get_client()
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await client.get(url, headers=self._headers(), timeout=self.timeout_s)
            except httpx.HTTPError as exc:
                logger.warning(
                    "%s request failed (attempt %s/%s): %s",
                    self.platform,
                    attempt,
                    self.max_retries,
                    exc,
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(0.5 * (2 ** (attempt - 1)))
                continue
            if response.status_code >= 400:
                raise FetchError(url, f"{self.platform} returned {response.status_code}", response.status_code)
            return response.text
        raise FetchError(url, f"{self.platform} request failed after {self.max_retries} attempts")

    async def render_html(self, url: str) -> Optional[str]:
        if self.renderer is None:
            logger.warning("Headless fetch requested for %s but no browser renderer is configured", self.platform)
            return None
        return await self.renderer.render(url, referer=self.referer)

    def page_budget(self, limit: int) -> int:
        return max(1, min(self.max_pages, math.ceil(limit / self.page_size)))

    async def fetch(self, term: str, limit: int, *, headless: bool = False) -> list[RawListing]:
        """Collect up to `limit` usable listings for a search term. Never raises on network errors."""
        listings: list[RawListing] = []
        seen: set[str] = set()
        empty_pages = 0

        for page in range(1, self.page_budget(limit) + 1):
            url = self.search_url(term, page)
            try:
                html = await self.render_html(url) if headless else await self.fetch_html(url)
            except FetchError as exc:
                logger.warning("Skipping page %s for %r on %s: %s", page, term, self.platform, exc.message)
                html = None

            added = 0
            for result in extract_search_results(html, self.platform, self.base_url):
                if not result.usable or result.record.url in seen:
                    continue
                seen.add(result.record.url)
                listings.append(result.record)
                added += 1
                if len(listings) >= limit:
                    break

            logger.debug("%s %r page %s: +%s (total %s)", self.platform, term, page, added, len(listings))
            if len(listings) >= limit:
                break
            empty_pages = empty_pages + 1 if added == 0 else 0
            if empty_pages >= EMPTY_PAGES_BEFORE_STOP:
                break
        return listings

    async def fetch_detail(self, url: str) -> Optional[dict[str, Any]]:
        """Structured detail payload for a product page, or None when the page cannot be fetched or parsed."""
        try:
            html = await self.fetch_html(url)
        except FetchError as exc:
            logger.warning("Detail fetch failed for %s: %s", url, exc.message)
            return None
        return extract_detail(html, url, self.platform).record.detail
