from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator


logger = logging.getLogger(__name__)


class BrowserUnavailableError(RuntimeError):
    pass


class BrowserManager:
    """One headless Chromium per event loop; isolated contexts are handed out per unit of work.

    The browser is launched lazily on the first `new_context()`.
    """

    def __init__(self, *, headless: bool = True) -> None:
        self._headless = headless
        self._playwright: Any = None
        self._browser: Any = None
        self._lock = asyncio.Lock()

    @property
    def started(self) -> bool:
        return self._browser is not None

    async def _ensure_browser(self) -> Any:
        async with self._lock:
            if self._browser is None:
                try:
                    from playwright.async_api import async_playwright  # type: ignore
                except ImportError as e:
                    raise BrowserUnavailableError(
                        "Missing dependency: playwright. Install it and run `playwright install chromium`."
                    ) from e
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=self._headless)
                logger.info("browser_launched headless=%s", self._headless)
            return self._browser

    @asynccontextmanager
    async def new_context(self) -> AsyncIterator[Any]:
        """Yield a fresh BrowserContext; it is closed on every exit path, cancellation included."""
        browser = await self._ensure_browser()
        context = await browser.new_context()
        try:
            yield context
        finally:
            await context.close()

    async def close(self) -> None:
        async with self._lock:
            if self._browser is not None:
                await self._browser.close()
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None
