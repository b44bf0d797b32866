from __future__ import annotations

import asyncio
import logging
from typing import Optional

from playwright.async_api import Browser, Error as PlaywrightError, Playwright, async_playwright

logger = logging.getLogger(__name__)

CONSENT_BUTTON_TEXT = ("Accept", "Accept all", "I agree", "Agree", "Got it", "Allow all", "OK")


class BrowserRenderer:
    """Headless chromium used only when a static fetch comes back too thin."""

    def __init__(
        self,
        user_agent: str,
        timeout_s: float = 30.0,
        settle_ms: int = 1200,
        locale: str = "en-US",
    ) -> None:
        self.user_agent = user_agent
        self.timeout_s = timeout_s
        self.settle_ms = settle_ms
        self.locale = locale
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def _ensure_browser(self) -> Browser:
        async with self._lock:
            if self._browser is None:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=True)
            return self._browser

    async def _dismiss_consent(self, page) -> None:
        for label in CONSENT_BUTTON_TEXT:
            button = page.get_by_role("button", name=label, exact=True)
            try:
                if await button.count() and await button.first.is_visible():
                    await button.first.click(timeout=1500)
                    logger.debug("Dismissed consent banner via %r", label)
                    return
            except PlaywrightError:
                continue

    async def render(self, url: str, referer: Optional[str] = None) -> Optional[str]:
        """Return the rendered HTML, or None when navigation fails or times out."""
        browser = await self._ensure_browser()
        context = await browser.new_context(
            user_agent=self.user_agent,
            locale=self.locale,
            extra_http_headers={"Referer": referer} if referer else None,
        )
        try:
            page = await context.new_page()
            await page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_s * 1000)
            await self._dismiss_consent(page)
            await page.wait_for_timeout(self.settle_ms)
            return await page.content()
        except PlaywrightError as exc:
            logger.warning("Headless render failed for %s: %s", url, exc)
            return None
        finally:
            await context.close()

    async def aclose(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
