from __future__ import annotations

import logging
from typing import Any

from bookflow.config.load_config import AppConfig
from bookflow.flow.dispatcher import Dispatcher
from bookflow.flow.errors import FlowFailedError
from bookflow.flow.node import JobNode, StageType
from bookflow.flow.scheduler import FlowHandle, FlowScheduler
from bookflow.llm.scoring import BookScorer
from bookflow.models import Book
from bookflow.storage.sqlite_store import SQLiteStore
from bookflow.tools.browser import BrowserManager
from bookflow.tools.scraper import PlaywrightDescriptionExtractor, PlaywrightSearchSource
from bookflow.tools.webhook import WebhookSink

from .builder import FlowBuilder, build_fetch_flow
from .stages import (
    DescriptionExtractor,
    NotificationSink,
    Scorer,
    SearchSource,
    StageContext,
    StageExecutors,
)
from .tracker import RequestStateTracker


logger = logging.getLogger(__name__)


class EnrichmentPipeline:
    """Wires store, tracker, builder, executors and scheduler for book requests.

    Must be used from a single event loop; the store is not shared across threads.
    """

    def __init__(
        self,
        *,
        store: SQLiteStore,
        source: SearchSource,
        extractor: DescriptionExtractor,
        scorer: Scorer,
        sink: NotificationSink,
        batch_size: int = 6,
        max_workers: int = 4,
        search_pages: int = 2,
        precision: int = 2,
    ) -> None:
        self.store = store
        self.tracker = RequestStateTracker(store)
        self.builder = FlowBuilder(self.tracker, batch_size=batch_size)
        ctx = StageContext(
            source=source,
            extractor=extractor,
            scorer=scorer,
            sink=sink,
            tracker=self.tracker,
            launch=self._launch_enrichment,
            trace=self._trace,
            search_pages=search_pages,
            precision=precision,
        )
        self.dispatcher = Dispatcher(StageExecutors(ctx).table())
        self.scheduler = FlowScheduler(
            self.dispatcher,
            max_workers=max_workers,
            on_flow_failed=self._on_flow_failed,
            on_node_event=self._on_node_event,
        )

    def submit_request(self, request_id: str, topic: str) -> FlowHandle:
        """Start a request: schedules its fetch-source flow and returns immediately."""
        return self.scheduler.submit(build_fetch_flow(request_id, topic))

    async def run_request(self, request_id: str, topic: str) -> str:
        """Run a request to the end (fetch, then the enrichment tree) and return its final status."""
        fetch = self.submit_request(request_id, topic)
        try:
            await fetch.wait()
        except FlowFailedError as e:
            logger.info("request_failed request_id=%s stage=%s", request_id, e.stage)
        else:
            # Shared by every caller of this request; None once the tree has finished.
            handle = self.enrichment_flow(request_id)
            if handle is not None:
                try:
                    await handle.wait()
                except FlowFailedError as e:
                    logger.info("request_failed request_id=%s stage=%s", request_id, e.stage)
        return self.store.get_request_status(request_id) or "unknown"

    def enrichment_flow(self, request_id: str) -> FlowHandle | None:
        return self.scheduler.in_flight(JobNode(StageType.NOTIFY, request_id=request_id).flow_key)

    def _launch_enrichment(self, request_id: str, topic: str, books: list[Book]) -> None:
        existing = self.enrichment_flow(request_id)
        if existing is not None:
            logger.info("enrichment_already_in_flight request_id=%s", request_id)
            return

        root = self.builder.build(request_id, topic, books)
        if root is not None:
            self.scheduler.submit(root)

    def _on_flow_failed(self, root: JobNode, node: JobNode, error: BaseException) -> None:
        # No-op when the request is already terminal (e.g. notify failing after finalize).
        self.tracker.mark_failed(root.request_id, f"{node.stage.value}: {error}")

    def _on_node_event(self, node: JobNode, event_type: str, payload: dict[str, Any]) -> None:
        self._trace(node.request_id, event_type, payload)

    def _trace(self, request_id: str, event_type: str, payload: dict[str, Any]) -> None:
        self.store.append_event(request_id, event_type, payload)


def build_pipeline(store: SQLiteStore, cfg: AppConfig, *, browser: BrowserManager) -> EnrichmentPipeline:
    """Production wiring: Playwright source/extractor, LLM scorer, webhook sink."""
    return EnrichmentPipeline(
        store=store,
        source=PlaywrightSearchSource(
            browser,
            cfg.source,
            navigation_timeout_ms=cfg.extractor.navigation_timeout_ms,
        ),
        extractor=PlaywrightDescriptionExtractor(browser, cfg.extractor),
        scorer=BookScorer(cfg.scoring),
        sink=WebhookSink(timeout_s=cfg.notify.timeout_s),
        batch_size=cfg.flow.batch_size,
        max_workers=cfg.flow.max_workers,
        search_pages=cfg.flow.search_pages,
        precision=cfg.scoring.precision,
    )
