from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Sequence

from bookflow.flow.errors import StoreError
from bookflow.models import Book


SCHEMA_VERSION = 2

REQUEST_STATUSES = ("pending", "in_progress", "done", "failed")
TERMINAL_REQUEST_STATUSES = frozenset({"done", "failed"})

_BOOK_COLUMNS = (
    "book_id",
    "request_id",
    "title",
    "url",
    "current_price",
    "original_price",
    "description",
    "author",
    "summary",
    "discount_amount",
    "discount_percentage",
    "relevance_score",
    "value_score",
)


def _utc_ts() -> float:
    return time.time()


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def default_db_path() -> str:
    return os.getenv("BOOKFLOW_SQLITE_PATH", "data/app.db")


@dataclass(frozen=True)
class RequestRecord:
    request_id: str
    created_at: float
    topic: str
    status: str


def request_row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "request_id": row["request_id"],
        "created_at": float(row["created_at"]),
        "updated_at": float(row["updated_at"]),
        "topic": row["topic"],
        "status": row["status"],
        "error": row["error"],
    }


class SQLiteStore:
    """SQLite-backed store for scrape requests, books and trace events.

    - Book rows are only ever written by `finalize_request`, together with the
      request's move to `done`, in one transaction.
    - Request status is monotonic: updates are conditional on the current status.
      Callers go through `RequestStateTracker`; the store only offers the primitives.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Explicit transactions only (BEGIN ... COMMIT), see `transaction`.
        self._conn = sqlite3.connect(str(self.db_path), isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON;")
        self._conn.execute("PRAGMA journal_mode = WAL;")
        self._conn.execute("PRAGMA synchronous = NORMAL;")

        self._init_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self, *, mode: str = "IMMEDIATE") -> Iterable[None]:
        """Context manager for an explicit SQLite transaction (all-or-nothing)."""
        self._conn.execute(f"BEGIN {mode};")
        try:
            yield
            self._conn.execute("COMMIT;")
        except BaseException:
            self._conn.execute("ROLLBACK;")
            raise

    def _init_schema(self) -> None:
        with self.transaction():
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scrape_requests (
                  request_id TEXT PRIMARY KEY,
                  created_at REAL NOT NULL,
                  updated_at REAL NOT NULL,
                  topic TEXT NOT NULL,
                  status TEXT NOT NULL,
                  error TEXT
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS books (
                  book_id TEXT PRIMARY KEY,
                  request_id TEXT NOT NULL,
                  created_at REAL NOT NULL,
                  title TEXT NOT NULL,
                  url TEXT NOT NULL,
                  current_price REAL,
                  original_price REAL,
                  description TEXT,
                  author TEXT,
                  summary TEXT,
                  discount_amount REAL,
                  discount_percentage REAL,
                  relevance_score REAL,
                  value_score REAL,
                  FOREIGN KEY (request_id) REFERENCES scrape_requests(request_id) ON DELETE CASCADE
                );
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                  event_id TEXT PRIMARY KEY,
                  request_id TEXT NOT NULL,
                  created_at REAL NOT NULL,
                  event_type TEXT NOT NULL,
                  payload_json TEXT NOT NULL
                );
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_books_request ON books(request_id);")
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_events_request_ts ON events(request_id, created_at);")
            # New databases start at schema_version=1 and migrate up to SCHEMA_VERSION.
            self._conn.execute(
                "INSERT OR IGNORE INTO meta(key, value) VALUES(?, ?);",
                ("schema_version", "1"),
            )

        self._migrate_if_needed()

    def _get_schema_version(self) -> int:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?;", ("schema_version",)).fetchone()
        if row is None:
            return 0
        try:
            return int(row["value"])
        except ValueError:
            return 0

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO meta(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value;",
            ("schema_version", str(int(version))),
        )

    def _migrate_if_needed(self) -> None:
        current = self._get_schema_version()
        target = int(SCHEMA_VERSION)
        if current == target:
            return
        if current > target:
            raise RuntimeError(f"DB schema_version={current} is newer than code expects ({target}).")

        with self.transaction():
            while current < target:
                if current == 1:
                    self._migrate_1_to_2()
                    current = 2
                    self._set_schema_version(current)
                else:
                    raise RuntimeError(f"Missing migration step for schema_version={current} -> {current+1}")

    def _migrate_1_to_2(self) -> None:
        # Idempotency table for POST /requests (API-level retries) + list indexes.
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
              key TEXT PRIMARY KEY,
              created_at REAL NOT NULL,
              request_hash TEXT NOT NULL,
              response_json TEXT NOT NULL
            );
            """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_requests_status_created ON scrape_requests(status, created_at);"
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_requests_created ON scrape_requests(created_at, request_id);"
        )

    # --- Idempotency (API support)
    def get_idempotency(self, key: str) -> sqlite3.Row | None:
        return self._conn.execute(
            "SELECT key, created_at, request_hash, response_json FROM idempotency_keys WHERE key = ? LIMIT 1;",
            (key,),
        ).fetchone()

    def put_idempotency(self, *, key: str, request_hash: str, response_json: str) -> None:
        self._conn.execute(
            """
            INSERT INTO idempotency_keys(key, created_at, request_hash, response_json)
            VALUES(?, ?, ?, ?)
            ON CONFLICT(key) DO NOTHING;
            """,
            (key, _utc_ts(), request_hash, response_json),
        )

    # --- Requests
    def create_request(self, *, topic: str) -> RequestRecord:
        request_id = _new_id("req")
        created_at = _utc_ts()
        self._conn.execute(
            """
            INSERT INTO scrape_requests(request_id, created_at, updated_at, topic, status)
            VALUES(?, ?, ?, ?, ?);
            """,
            (request_id, created_at, created_at, topic, "pending"),
        )
        return RequestRecord(request_id=request_id, created_at=created_at, topic=topic, status="pending")

    def get_request(self, *, request_id: str) -> sqlite3.Row | None:
        return self._conn.execute(
            """
            SELECT request_id, created_at, updated_at, topic, status, error
            FROM scrape_requests
            WHERE request_id = ?
            LIMIT 1;
            """,
            (request_id,),
        ).fetchone()

    def get_request_status(self, request_id: str) -> str | None:
        row = self.get_request(request_id=request_id)
        return None if row is None else str(row["status"])

    def list_request_rows_by_status(self, status: str) -> list[sqlite3.Row]:
        return self._conn.execute(
            """
            SELECT request_id, created_at, updated_at, topic, status, error
            FROM scrape_requests
            WHERE status = ?
            ORDER BY created_at ASC, request_id ASC;
            """,
            (status,),
        ).fetchall()

    def list_requests_page(
        self,
        *,
        limit: int,
        cursor: tuple[float, str] | None,
        statuses: list[str] | None,
    ) -> dict[str, Any]:
        where = ["1=1"]
        params: list[Any] = []

        if statuses:
            where.append("status IN (%s)" % ",".join(["?"] * len(statuses)))
            params.extend(statuses)

        if cursor is not None:
            created_at, request_id = cursor
            # Newest-first pagination (DESC).
            where.append("(created_at < ? OR (created_at = ? AND request_id < ?))")
            params.extend([float(created_at), float(created_at), str(request_id)])

        where_sql = " AND ".join(where)
        rows = self._conn.execute(
            f"""
            SELECT request_id, created_at, updated_at, topic, status, error
            FROM scrape_requests
            WHERE {where_sql}
            ORDER BY created_at DESC, request_id DESC
            LIMIT ?;
            """,
            (*params, int(limit) + 1),
        ).fetchall()

        has_more = len(rows) > limit
        items = [request_row_to_dict(r) for r in rows[:limit]]

        next_cursor: tuple[float, str] | None = None
        if has_more and items:
            last = items[-1]
            next_cursor = (float(last["created_at"]), str(last["request_id"]))

        return {"items": items, "has_more": has_more, "next_cursor": next_cursor}

    def count_requests_by_status(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT status, COUNT(*) AS n FROM scrape_requests GROUP BY status ORDER BY status;",
        ).fetchall()
        return {str(r["status"]): int(r["n"]) for r in rows}

    def transition_request_status(
        self,
        request_id: str,
        to_status: str,
        *,
        from_statuses: Sequence[str],
        error: str | None = None,
    ) -> bool:
        """Move a request to `to_status` iff its current status is in `from_statuses`.

        Returns False (and changes nothing) otherwise.
        """
        if to_status not in REQUEST_STATUSES:
            raise ValueError(f"Unknown request status: {to_status!r}")
        if not from_statuses:
            return False
        cur = self._conn.execute(
            f"""
            UPDATE scrape_requests
            SET status = ?, updated_at = ?, error = COALESCE(?, error)
            WHERE request_id = ? AND status IN ({",".join(["?"] * len(from_statuses))});
            """,
            (to_status, _utc_ts(), error, request_id, *from_statuses),
        )
        return cur.rowcount == 1

    def finalize_request(self, request_id: str, books: Sequence[Book]) -> None:
        """Insert all book rows and mark the request `done`, atomically.

        Raises StoreError (after rollback) if the request is missing or already
        terminal, so a request's rows are never written twice.
        """
        try:
            with self.transaction(mode="IMMEDIATE"):
                created_at = _utc_ts()
                self._conn.executemany(
                    f"""
                    INSERT INTO books({", ".join(_BOOK_COLUMNS)}, created_at)
                    VALUES({", ".join(["?"] * len(_BOOK_COLUMNS))}, ?);
                    """,
                    [tuple(getattr(b, c) for c in _BOOK_COLUMNS) + (created_at,) for b in books],
                )
                moved = self.transition_request_status(
                    request_id,
                    "done",
                    from_statuses=("pending", "in_progress"),
                )
                if not moved:
                    status = self.get_request_status(request_id)
                    raise StoreError(
                        f"Cannot finalize request {request_id}: "
                        + ("not found" if status is None else f"status is already {status!r}")
                    )
        except sqlite3.Error as e:
            raise StoreError(f"Finalize transaction failed for request {request_id}: {e}") from e

    def list_books(self, *, request_id: str) -> list[Book]:
        rows = self._conn.execute(
            f"""
            SELECT {", ".join(_BOOK_COLUMNS)}
            FROM books
            WHERE request_id = ?
            ORDER BY rowid;
            """,
            (request_id,),
        ).fetchall()
        return [Book(**{c: r[c] for c in _BOOK_COLUMNS}) for r in rows]

    def count_books(self, *, request_id: str) -> int:
        row = self._conn.execute("SELECT COUNT(*) AS n FROM books WHERE request_id = ?;", (request_id,)).fetchone()
        return int(row["n"])

    # --- Events (trace)
    def append_event(self, request_id: str, event_type: str, payload: dict[str, Any]) -> str:
        event_id = _new_id("evt")
        self._conn.execute(
            """
            INSERT INTO events(event_id, request_id, created_at, event_type, payload_json)
            VALUES(?, ?, ?, ?, ?);
            """,
            (event_id, request_id, _utc_ts(), event_type, _json_dumps(payload)),
        )
        return event_id

    def list_events(self, *, request_id: str, event_type: str | None = None) -> list[dict[str, Any]]:
        where = "request_id = ?"
        params: list[Any] = [request_id]
        if event_type:
            where += " AND event_type = ?"
            params.append(event_type)
        rows = self._conn.execute(
            f"""
            SELECT event_id, created_at, event_type, payload_json
            FROM events
            WHERE {where}
            ORDER BY created_at, rowid;
            """,
            params,
        ).fetchall()
        return [
            {
                "event_id": r["event_id"],
                "created_at": float(r["created_at"]),
                "event_type": r["event_type"],
                "payload": json.loads(r["payload_json"]),
            }
            for r in rows
        ]
