from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable

from bookflow.config.load_config import AppConfig, load_app_config
from bookflow.storage.sqlite_store import SQLiteStore, default_db_path
from bookflow.tools.browser import BrowserManager

from .pipeline import EnrichmentPipeline, build_pipeline


logger = logging.getLogger(__name__)


PipelineFactory = Callable[[SQLiteStore], EnrichmentPipeline]


@dataclass(frozen=True)
class WorkerConfig:
    resubmit_pending_on_start: bool = True
    start_timeout_s: float = 10.0


class FlowWorker:
    """Background thread hosting one event loop, one pipeline and one browser.

    All store access for flows happens on that thread. Other threads (HTTP
    handlers) hand requests over with `submit`.
    """

    def __init__(
        self,
        *,
        db_path: str | None = None,
        app_config: AppConfig | None = None,
        config: WorkerConfig | None = None,
        pipeline_factory: PipelineFactory | None = None,
    ) -> None:
        self._db_path = db_path or default_db_path()
        self._config = config or WorkerConfig()
        self._app_config = app_config
        self._pipeline_factory = pipeline_factory
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop: asyncio.Event | None = None
        self._ready = threading.Event()
        self._start_done = threading.Event()
        self._start_error: BaseException | None = None
        self._pipeline: EnrichmentPipeline | None = None
        self._browser: BrowserManager | None = None
        self._submitted = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and self._ready.is_set()

    def status_snapshot(self) -> dict[str, Any]:
        snapshot: dict[str, Any] = {
            "running": self.running,
            "db_path": self._db_path,
            "submitted": self._submitted,
        }
        pipeline = self._pipeline
        if pipeline is not None:
            snapshot["scheduler"] = pipeline.scheduler.status_snapshot()
        return snapshot

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._ready.clear()
        self._start_done.clear()
        self._start_error = None
        self._thread = threading.Thread(target=self._thread_main, name="bookflow-worker", daemon=True)
        self._thread.start()
        if not self._start_done.wait(timeout=self._config.start_timeout_s):
            raise RuntimeError("Flow worker did not start in time.")
        if self._start_error is not None:
            raise RuntimeError(f"Flow worker failed to start: {self._start_error}") from self._start_error

    def stop(self, *, timeout_s: float = 10.0) -> None:
        loop, stop = self._loop, self._stop
        if loop is not None and stop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(stop.set)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout_s)

    def submit(self, request_id: str, topic: str) -> Future[None]:
        """Thread-safe: schedule a request on the worker loop."""
        loop = self._loop
        if loop is None or not self.running:
            raise RuntimeError("Flow worker is not running.")
        self._submitted += 1
        return asyncio.run_coroutine_threadsafe(self._submit(request_id, topic), loop)

    async def _submit(self, request_id: str, topic: str) -> None:
        assert self._pipeline is not None
        self._pipeline.submit_request(request_id, topic)

    def _thread_main(self) -> None:
        loop = asyncio.new_event_loop()
        self._loop = loop
        try:
            loop.run_until_complete(self._main())
        except Exception as e:
            logger.exception("worker_crashed")
            self._start_error = e
        finally:
            loop.close()
            self._ready.clear()
            self._start_done.set()

    def _make_pipeline(self, store: SQLiteStore) -> EnrichmentPipeline:
        if self._pipeline_factory is not None:
            return self._pipeline_factory(store)
        cfg = self._app_config or load_app_config()
        self._browser = BrowserManager(headless=cfg.extractor.headless)
        return build_pipeline(store, cfg, browser=self._browser)

    async def _main(self) -> None:
        self._stop = asyncio.Event()
        store = SQLiteStore(self._db_path)
        try:
            self._pipeline = self._make_pipeline(store)
            if self._config.resubmit_pending_on_start:
                for row in store.list_request_rows_by_status("pending"):
                    logger.info("resubmitting_pending request_id=%s", row["request_id"])
                    self._pipeline.submit_request(str(row["request_id"]), str(row["topic"]))
            self._ready.set()
            self._start_done.set()
            logger.info("worker_started db_path=%s", self._db_path)

            await self._stop.wait()
            # In-flight flows are abandoned; their requests get reconciled on next startup.
            logger.info("worker_stopping flows=%s", self._pipeline.scheduler.status_snapshot()["flows_in_flight"])
        finally:
            self._ready.clear()
            pending = [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            if self._browser is not None:
                await self._browser.close()
            store.close()
            self._pipeline = None
