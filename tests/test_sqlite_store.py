from __future__ import annotations

import sqlite3
import tempfile

import pytest

from bookflow.flow.errors import StoreError
from bookflow.storage.sqlite_store import SCHEMA_VERSION, SQLiteStore

from _fakes import make_books


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name = ? LIMIT 1;",
        (name,),
    ).fetchone()
    return row is not None


def _tagged(request_id: str, n: int) -> list:
    return [b.model_copy(update={"request_id": request_id}) for b in make_books(n)]


def test_migration_creates_idempotency_table() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            assert _table_exists(store._conn, "idempotency_keys")
            assert store._get_schema_version() == SCHEMA_VERSION
        finally:
            store.close()

        # Reopening an up-to-date database is a no-op.
        store = SQLiteStore(f"{td}/app.db")
        store.close()


def test_fresh_database_creates_book_index() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            row = store._conn.execute(
                "SELECT sql FROM sqlite_master WHERE type='index' AND name = ?;",
                ("idx_books_request",),
            ).fetchone()
            assert row is not None
            assert "request_id" in row["sql"]
        finally:
            store.close()


def test_finalize_writes_all_rows_and_marks_done() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            rec = store.create_request(topic="python")
            assert rec.status == "pending"
            books = _tagged(rec.request_id, 13)

            store.finalize_request(rec.request_id, books)

            assert store.get_request_status(rec.request_id) == "done"
            stored = store.list_books(request_id=rec.request_id)
            assert [b.title for b in stored] == [b.title for b in books]
            assert stored[0] == books[0]
        finally:
            store.close()


def test_finalize_on_terminal_request_rolls_back() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            done = store.create_request(topic="python")
            store.finalize_request(done.request_id, _tagged(done.request_id, 2))
            with pytest.raises(StoreError):
                store.finalize_request(done.request_id, _tagged(done.request_id, 3))
            assert store.count_books(request_id=done.request_id) == 2

            failed = store.create_request(topic="rust")
            assert store.transition_request_status(failed.request_id, "failed", from_statuses=("pending",))
            with pytest.raises(StoreError) as e:
                store.finalize_request(failed.request_id, _tagged(failed.request_id, 4))
            assert "failed" in str(e.value)
            assert store.count_books(request_id=failed.request_id) == 0
            assert store.get_request_status(failed.request_id) == "failed"
        finally:
            store.close()


def test_transitions_are_conditional() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            rec = store.create_request(topic="go")
            assert store.transition_request_status(rec.request_id, "in_progress", from_statuses=("pending",))
            assert not store.transition_request_status(rec.request_id, "in_progress", from_statuses=("pending",))
            assert store.transition_request_status(
                rec.request_id, "failed", from_statuses=("pending", "in_progress"), error="boom"
            )
            assert not store.transition_request_status(
                rec.request_id, "done", from_statuses=("pending", "in_progress")
            )
            row = store.get_request(request_id=rec.request_id)
            assert row["status"] == "failed"
            assert row["error"] == "boom"

            with pytest.raises(ValueError):
                store.transition_request_status(rec.request_id, "cancelled", from_statuses=("failed",))
        finally:
            store.close()


def test_list_requests_page_newest_first_with_status_filter() -> None:
    with tempfile.TemporaryDirectory() as td:
        store = SQLiteStore(f"{td}/app.db")
        try:
            ids = [store.create_request(topic=f"t{i}").request_id for i in range(5)]
            store.transition_request_status(ids[0], "failed", from_statuses=("pending",))

            page1 = store.list_requests_page(limit=2, cursor=None, statuses=None)
            assert page1["has_more"] is True
            page2 = store.list_requests_page(limit=10, cursor=page1["next_cursor"], statuses=None)
            assert page2["has_more"] is False
            seen = [r["request_id"] for r in page1["items"] + page2["items"]]
            assert sorted(seen) == sorted(ids)
            assert len(set(seen)) == 5

            failed = store.list_requests_page(limit=10, cursor=None, statuses=["failed"])
            assert [r["request_id"] for r in failed["items"]] == [ids[0]]
            assert store.count_requests_by_status() == {"failed": 1, "pending": 4}
        finally:
            store.close()
