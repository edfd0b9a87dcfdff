from __future__ import annotations

import logging
import urllib.parse
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from bookflow.config.load_config import ExtractorConfig, SourceConfig
from bookflow.flow.errors import SourceFetchError
from bookflow.models import Book
from bookflow.utils.amounts import parse_price

from .browser import BrowserManager


logger = logging.getLogger(__name__)


def build_search_url(template: str, *, topic: str, page: int) -> str:
    return template.format(query=urllib.parse.quote_plus(topic.strip()), page=int(page))


async def _text_of(root: Any, selector: str) -> str | None:
    el = await root.query_selector(selector)
    if el is None:
        return None
    text = (await el.inner_text() or "").strip()
    return text or None


class PlaywrightSearchSource:
    """Scrapes one search results page per call, each in its own browser context."""

    def __init__(self, browser: BrowserManager, cfg: SourceConfig, *, navigation_timeout_ms: int = 30000) -> None:
        self._browser = browser
        self._cfg = cfg
        self._timeout_ms = navigation_timeout_ms

    async def fetch(self, topic: str, page: int, *, request_id: str) -> list[Book]:
        url = build_search_url(self._cfg.search_url_template, topic=topic, page=page)
        try:
            async with self._browser.new_context() as context:
                tab = await context.new_page()
                await tab.goto(url, timeout=self._timeout_ms, wait_until="domcontentloaded")
                rows = await tab.query_selector_all(self._cfg.result_selector)
                books: list[Book] = []
                for row in rows:
                    title = await _text_of(row, self._cfg.title_selector)
                    link = await row.query_selector(self._cfg.link_selector)
                    href = await link.get_attribute("href") if link is not None else None
                    if not title or not href:
                        continue
                    books.append(
                        Book(
                            request_id=request_id,
                            title=title,
                            url=urllib.parse.urljoin(tab.url, href),
                            current_price=parse_price(await _text_of(row, self._cfg.current_price_selector)),
                            original_price=parse_price(await _text_of(row, self._cfg.original_price_selector)),
                        )
                    )
        except Exception as e:
            raise SourceFetchError(f"Search page {page} failed for {topic!r}: {type(e).__name__}: {e}") from e

        logger.info("search_page_fetched topic=%r page=%d results=%d", topic, page, len(books))
        return books


class PlaywrightExtractionSession:
    def __init__(self, context: Any, cfg: ExtractorConfig) -> None:
        self._context = context
        self._cfg = cfg

    async def extract(self, url: str) -> str | None:
        """Description text for one book page, or None when absent or unreachable."""
        tab = await self._context.new_page()
        try:
            await tab.goto(url, timeout=self._cfg.navigation_timeout_ms, wait_until="domcontentloaded")
            return await _text_of(tab, self._cfg.description_selector)
        except Exception as e:
            logger.warning("description_extract_failed url=%s error=%s: %s", url, type(e).__name__, e)
            return None
        finally:
            await tab.close()


class PlaywrightDescriptionExtractor:
    def __init__(self, browser: BrowserManager, cfg: ExtractorConfig) -> None:
        self._browser = browser
        self._cfg = cfg

    @asynccontextmanager
    async def session(self) -> AsyncIterator[PlaywrightExtractionSession]:
        """One isolated browser context, owned by a single batch."""
        async with self._browser.new_context() as context:
            yield PlaywrightExtractionSession(context, self._cfg)
