from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Callable, Protocol, Sequence

from bookflow.flow.dispatcher import StageExecutor
from bookflow.flow.errors import (
    CollaboratorError,
    NotificationError,
    ScoringError,
    SourceFetchError,
    UnmatchedResultError,
)
from bookflow.flow.node import StageType
from bookflow.models import Book, ScoreEntry
from bookflow.utils.amounts import round_to_precision

from .builder import FetchPayload, RequestPayload, ScorePayload
from .tracker import RequestStateTracker


logger = logging.getLogger(__name__)


class SearchSource(Protocol):
    async def fetch(self, topic: str, page: int, *, request_id: str) -> list[Book]: ...


class ExtractionSession(Protocol):
    async def extract(self, url: str) -> str | None: ...


class DescriptionExtractor(Protocol):
    def session(self) -> AsyncContextManager[ExtractionSession]: ...


class Scorer(Protocol):
    def score(self, books: Sequence[Book], *, topic: str = "") -> list[ScoreEntry]: ...


class NotificationSink(Protocol):
    def deliver(self, books: Sequence[Book]) -> Any: ...


# (request_id, topic, candidates) -> None; builds and submits the enrichment tree.
LaunchEnrichment = Callable[[str, str, list[Book]], None]
# (request_id, event_type, payload)
TraceFn = Callable[[str, str, dict[str, Any]], None]


@dataclass
class StageContext:
    source: SearchSource
    extractor: DescriptionExtractor
    scorer: Scorer
    sink: NotificationSink
    tracker: RequestStateTracker
    launch: LaunchEnrichment
    trace: TraceFn
    search_pages: int = 2
    precision: int = 2


def apply_scores(books: Sequence[Book], entries: Sequence[ScoreEntry], *, precision: int) -> list[Book]:
    """Match scorer entries to books by id and round every derived number once.

    Any book without an entry fails the whole batch (UnmatchedResultError).
    """
    by_id = {e.id: e for e in entries}
    missing = [b.book_id for b in books if b.book_id not in by_id]
    if missing:
        raise UnmatchedResultError(missing)

    scored: list[Book] = []
    for book in books:
        entry = by_id[book.book_id]
        scored.append(
            book.model_copy(
                update={
                    "author": entry.authors or None,
                    "summary": entry.summary,
                    "discount_amount": round_to_precision(entry.discount_amount, precision),
                    "discount_percentage": round_to_precision(entry.discount_percentage, precision),
                    "relevance_score": round_to_precision(entry.relevance_score, precision),
                    "value_score": round_to_precision(entry.value_score, precision),
                }
            )
        )
    return scored


class StageExecutors:
    """One executor per StageType, bound to a StageContext."""

    def __init__(self, ctx: StageContext) -> None:
        self._ctx = ctx

    def table(self) -> dict[StageType, StageExecutor]:
        return {
            StageType.FETCH_SOURCE: self.fetch_source,
            StageType.ENRICH_ITEM_BATCH: self.enrich_item_batch,
            StageType.AGGREGATE_AND_SCORE: self.aggregate_and_score,
            StageType.FINALIZE_REQUEST_STATUS: self.finalize_request_status,
            StageType.NOTIFY: self.notify,
        }

    async def fetch_source(self, payload: FetchPayload, _children: Any) -> list[Book]:
        ctx = self._ctx
        if ctx.tracker.is_settled(payload.request_id):
            status = ctx.tracker.status(payload.request_id)
            logger.info("fetch_skipped request_id=%s status=%s", payload.request_id, status)
            ctx.trace(payload.request_id, "fetch_skipped", {"status": status})
            return []

        pages = range(1, int(ctx.search_pages) + 1)
        try:
            # All pages in parallel; the first failed page cancels the others.
            async with asyncio.TaskGroup() as tg:
                fetches = [
                    tg.create_task(ctx.source.fetch(payload.topic, page, request_id=payload.request_id))
                    for page in pages
                ]
        except ExceptionGroup as eg:
            first = eg.exceptions[0]
            if isinstance(first, CollaboratorError):
                raise first
            raise SourceFetchError(
                f"Search failed for {payload.topic!r}: {type(first).__name__}: {first}"
            ) from first
        per_page = [f.result() for f in fetches]

        books = [
            book.model_copy(update={"request_id": payload.request_id})
            for page_books in per_page
            for book in page_books
        ]
        ctx.trace(payload.request_id, "candidates_fetched", {"pages": len(pages), "books": len(books)})

        if books:
            ctx.tracker.mark_in_progress(payload.request_id)
        ctx.launch(payload.request_id, payload.topic, books)
        return books

    async def _extract_one(self, session: ExtractionSession, book: Book) -> str:
        try:
            return await session.extract(book.url) or ""
        except Exception as e:
            logger.warning("description_missing book_id=%s url=%s error=%s", book.book_id, book.url, e)
            return ""

    async def enrich_item_batch(self, batch: list[Book], _children: Any) -> list[Book]:
        try:
            async with self._ctx.extractor.session() as session:
                descriptions = await asyncio.gather(*(self._extract_one(session, b) for b in batch))
        except CollaboratorError:
            raise
        except Exception as e:
            raise CollaboratorError(f"Extractor unavailable: {type(e).__name__}: {e}") from e

        return [b.model_copy(update={"description": d}) for b, d in zip(batch, descriptions)]

    async def aggregate_and_score(self, payload: ScorePayload, books: list[Book]) -> list[Book]:
        ctx = self._ctx
        try:
            entries = await asyncio.to_thread(ctx.scorer.score, books, topic=payload.topic)
        except CollaboratorError:
            raise
        except Exception as e:
            raise ScoringError(f"Scorer failed: {type(e).__name__}: {e}") from e

        scored = apply_scores(books, entries, precision=ctx.precision)
        ctx.trace(payload.request_id, "books_scored", {"books": len(scored)})
        return scored

    async def finalize_request_status(self, payload: RequestPayload, books: list[Book]) -> list[Book]:
        self._ctx.tracker.finalize(payload.request_id, books)
        return books

    async def notify(self, payload: RequestPayload, books: list[Book]) -> None:
        ctx = self._ctx
        try:
            await asyncio.to_thread(ctx.sink.deliver, books)
        except CollaboratorError:
            raise
        except Exception as e:
            raise NotificationError(f"Delivery failed: {type(e).__name__}: {e}") from e
        ctx.trace(payload.request_id, "notify_delivered", {"rows": len(books)})
        return None
