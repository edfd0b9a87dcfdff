from __future__ import annotations

import asyncio
import tempfile
from typing import Any

from bookflow.runtime.pipeline import EnrichmentPipeline
from bookflow.storage.sqlite_store import SQLiteStore
from bookflow.tools.webhook import book_to_row

from _fakes import FakeExtractor, FakeScorer, FakeSink, FakeSource, make_books


def _run(store: SQLiteStore, topic: str = "python programming", **collaborators: Any) -> tuple[str, str]:
    rid = store.create_request(topic=topic).request_id

    async def main() -> str:
        pipeline = EnrichmentPipeline(
            store=store,
            source=collaborators.get("source") or FakeSource({1: make_books(7), 2: make_books(6, start=7)}),
            extractor=collaborators.get("extractor") or FakeExtractor(),
            scorer=collaborators.get("scorer") or FakeScorer(),
            sink=collaborators.get("sink") or FakeSink(),
            batch_size=6,
            max_workers=4,
            search_pages=2,
            precision=2,
        )
        status = await pipeline.run_request(rid, topic)
        await pipeline.scheduler.drain()
        return status

    return rid, asyncio.run(main())


def _event_types(store: SQLiteStore, rid: str) -> list[str]:
    return [e["event_type"] for e in store.list_events(request_id=rid)]


def test_thirteen_candidates_end_to_end() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            extractor, scorer, sink = FakeExtractor(), FakeScorer(), FakeSink()
            rid, status = _run(store, extractor=extractor, scorer=scorer, sink=sink)

            assert status == "done"
            books = store.list_books(request_id=rid)
            assert len(books) == 13
            assert [b.title for b in books] == [f"Book {i}" for i in range(13)]
            assert all(b.request_id == rid for b in books)
            assert books[0].description == f"About {books[0].url}"
            assert books[0].author == "Author of Book 0"
            assert books[0].relevance_score == 7.46
            assert books[0].discount_percentage == 23.08
            assert books[0].discount_amount == 3.0

            # One scoring call over all batches, one delivery with every row in order.
            assert len(scorer.calls) == 1
            assert len(scorer.calls[0]) == 13
            assert len(sink.deliveries) == 1
            assert sink.deliveries[0] == [book_to_row(b) for b in books]
            assert extractor.opened == extractor.closed == 3

            changes = [
                (e["payload"]["from"], e["payload"]["to"])
                for e in store.list_events(request_id=rid, event_type="request_status_changed")
            ]
            assert changes == [("pending", "in_progress"), ("in_progress", "done")]
            assert "notify_delivered" in _event_types(store, rid)
        finally:
            store.close()


def test_zero_candidates_completes_without_notify() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            scorer, sink = FakeScorer(), FakeSink()
            rid, status = _run(store, source=FakeSource({}), scorer=scorer, sink=sink)

            assert status == "done"
            assert store.count_books(request_id=rid) == 0
            assert scorer.calls == []
            assert sink.deliveries == []
        finally:
            store.close()


def test_failed_search_page_fails_request() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            extractor, sink = FakeExtractor(), FakeSink()
            source = FakeSource({1: make_books(7), 2: RuntimeError("503 from search page")})
            rid, status = _run(store, source=source, extractor=extractor, sink=sink)

            assert status == "failed"
            row = store.get_request(request_id=rid)
            assert row["error"].startswith("fetch-source:")
            assert store.count_books(request_id=rid) == 0
            assert extractor.opened == 0
            assert sink.deliveries == []
            assert "flow_failed" in _event_types(store, rid)
        finally:
            store.close()


def test_unmatched_scorer_entry_fails_request() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            sink = FakeSink()
            rid, status = _run(store, scorer=FakeScorer(drop=[4]), sink=sink)

            assert status == "failed"
            assert store.get_request(request_id=rid)["error"].startswith("aggregate-and-score:")
            assert store.count_books(request_id=rid) == 0
            assert sink.deliveries == []
        finally:
            store.close()


def test_scorer_error_fails_request() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            rid, status = _run(store, scorer=FakeScorer(error=RuntimeError("rate limited")))

            assert status == "failed"
            assert "rate limited" in store.get_request(request_id=rid)["error"]
            assert store.count_books(request_id=rid) == 0
        finally:
            store.close()


def test_item_extraction_failure_keeps_book_with_empty_description() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            broken = make_books(7)[3].url
            extractor = FakeExtractor(broken_urls=[broken])
            rid, status = _run(store, extractor=extractor)

            assert status == "done"
            books = {b.url: b for b in store.list_books(request_id=rid)}
            assert len(books) == 13
            assert books[broken].description == ""
            assert extractor.opened == extractor.closed == 3
        finally:
            store.close()


def test_extractor_unavailable_fails_request() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            rid, status = _run(store, extractor=FakeExtractor(fail_on_open=True))

            assert status == "failed"
            assert store.get_request(request_id=rid)["error"].startswith("enrich-item-batch:")
            assert store.count_books(request_id=rid) == 0
        finally:
            store.close()


def test_notify_failure_leaves_request_done() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            rid, status = _run(store, sink=FakeSink(error=RuntimeError("webhook 500")))

            assert status == "done"
            assert store.count_books(request_id=rid) == 13
            failed = store.list_events(request_id=rid, event_type="flow_failed")
            assert failed[-1]["payload"]["stage"] == "notify"
        finally:
            store.close()


def _pipeline(store: SQLiteStore, **collaborators: Any) -> EnrichmentPipeline:
    return EnrichmentPipeline(
        store=store,
        source=collaborators.get("source") or FakeSource({1: make_books(7), 2: make_books(6, start=7)}),
        extractor=collaborators.get("extractor") or FakeExtractor(),
        scorer=collaborators.get("scorer") or FakeScorer(),
        sink=collaborators.get("sink") or FakeSink(),
        batch_size=6,
        max_workers=4,
        search_pages=2,
        precision=2,
    )


def test_rerun_of_settled_request_has_no_side_effects() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            sink = FakeSink()
            done_id, status = _run(store, sink=sink)
            assert status == "done"
            failed_id = store.create_request(topic="rust").request_id
            store.transition_request_status(failed_id, "failed", from_statuses=("pending",), error="earlier")

            source, extractor, scorer = FakeSource({1: make_books(2)}), FakeExtractor(), FakeScorer()

            async def again() -> list[str]:
                pipeline = _pipeline(store, source=source, extractor=extractor, scorer=scorer, sink=sink)
                return [
                    await pipeline.run_request(done_id, "python programming"),
                    await pipeline.run_request(failed_id, "rust"),
                ]

            assert asyncio.run(again()) == ["done", "failed"]
            assert source.calls == []
            assert extractor.opened == 0
            assert scorer.calls == []
            assert len(sink.deliveries) == 1
            assert store.count_books(request_id=done_id) == 13
            assert store.count_books(request_id=failed_id) == 0
            assert "fetch_skipped" in _event_types(store, failed_id)
        finally:
            store.close()


def test_concurrent_runs_of_one_request_share_the_flow() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            rid = store.create_request(topic="python").request_id
            scorer, sink = FakeScorer(), FakeSink()

            async def main() -> list[str]:
                pipeline = _pipeline(store, scorer=scorer, sink=sink)
                statuses = await asyncio.gather(
                    pipeline.run_request(rid, "python"),
                    pipeline.run_request(rid, "python"),
                )
                await pipeline.scheduler.drain()
                return list(statuses)

            assert asyncio.run(main()) == ["done", "done"]
            assert store.count_books(request_id=rid) == 13
            assert len(scorer.calls) == 1
            assert len(sink.deliveries) == 1
        finally:
            store.close()


class _SlowPageSource:
    """Page 1 is slow, page 2 fails at once."""

    def __init__(self) -> None:
        self.finished: list[int] = []
        self.cancelled: list[int] = []

    async def fetch(self, topic: str, page: int, *, request_id: str) -> list:
        if page == 2:
            raise RuntimeError("503 from search page")
        try:
            await asyncio.sleep(0.5)
        except asyncio.CancelledError:
            self.cancelled.append(page)
            raise
        self.finished.append(page)
        return make_books(3)


def test_failed_page_cancels_the_other_pages() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            source = _SlowPageSource()
            rid, status = _run(store, source=source)

            assert status == "failed"
            assert source.cancelled == [1]
            assert source.finished == []
            assert store.count_books(request_id=rid) == 0
        finally:
            store.close()
