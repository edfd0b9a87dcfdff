from __future__ import annotations

import logging
from typing import Sequence

from bookflow.models import Book
from bookflow.storage.sqlite_store import TERMINAL_REQUEST_STATUSES, SQLiteStore


logger = logging.getLogger(__name__)


# to_status -> statuses it may be entered from. `done` and `failed` are terminal.
_ALLOWED_FROM: dict[str, tuple[str, ...]] = {
    "in_progress": ("pending",),
    "done": ("pending", "in_progress"),
    "failed": ("pending", "in_progress"),
}


class RequestStateTracker:
    """Owns a request's lifecycle: pending -> in_progress -> {done, failed}.

    Every write is a conditional update, so a terminal request never changes
    again regardless of which stage or hook asks.
    """

    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    def _transition(self, request_id: str, to_status: str, *, error: str | None = None) -> bool:
        before = self._store.get_request_status(request_id)
        moved = self._store.transition_request_status(
            request_id,
            to_status,
            from_statuses=_ALLOWED_FROM[to_status],
            error=error,
        )
        if moved:
            payload = {"from": before, "to": to_status}
            if error:
                payload["error"] = error
            self._store.append_event(request_id, "request_status_changed", payload)
            logger.info("request_status request_id=%s %s -> %s", request_id, before, to_status)
        else:
            logger.info(
                "request_status_unchanged request_id=%s status=%s requested=%s",
                request_id,
                before,
                to_status,
            )
        return moved

    def status(self, request_id: str) -> str | None:
        return self._store.get_request_status(request_id)

    def is_settled(self, request_id: str) -> bool:
        """True for unknown requests and for `done`/`failed` ones; no stage should run for them."""
        return self.status(request_id) in (None, *TERMINAL_REQUEST_STATUSES)

    def mark_in_progress(self, request_id: str) -> bool:
        return self._transition(request_id, "in_progress")

    def mark_done(self, request_id: str) -> bool:
        return self._transition(request_id, "done")

    def mark_failed(self, request_id: str, error: str) -> bool:
        return self._transition(request_id, "failed", error=error)

    def finalize(self, request_id: str, books: Sequence[Book]) -> None:
        """Persist all books and mark the request done as one transaction (StoreError on failure)."""
        before = self._store.get_request_status(request_id)
        self._store.finalize_request(request_id, books)
        self._store.append_event(
            request_id,
            "request_status_changed",
            {"from": before, "to": "done", "books": len(books)},
        )
        logger.info("request_finalized request_id=%s books=%d", request_id, len(books))

    def reconcile_in_progress(self, *, reason: str = "server_restarted") -> int:
        """Fail every `in_progress` request; their job trees died with the previous process.

        Returns the number of requests moved to `failed`.
        """
        moved = 0
        for row in self._store.list_request_rows_by_status("in_progress"):
            if self._transition(str(row["request_id"]), "failed", error=reason):
                moved += 1
        return moved
