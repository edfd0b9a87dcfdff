from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Sequence

from bookflow.flow.errors import NotificationError
from bookflow.models import Book


logger = logging.getLogger(__name__)


def webhook_url_from_env() -> str:
    return os.getenv("BOOKFLOW_WEBHOOK_URL", "").strip()


def book_to_row(book: Book) -> dict[str, Any]:
    """Flat record shape the spreadsheet scenario expects; keys must not change."""
    return {
        "Title": book.title,
        "Author": book.author or "",
        "Description": book.description,
        "Summary": book.summary,
        "Current Price": book.current_price,
        "Original Price": book.original_price,
        "Discount Amount": book.discount_amount,
        "Discount %": book.discount_percentage,
        "Value Score": book.value_score,
        "Relevance Score": book.relevance_score,
        "URL": book.url,
    }


def _http_post_json(url: str, payload: dict[str, Any], *, timeout_s: float) -> int:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json", "Accept": "application/json"},
    )
    try:
        with urllib.request.urlopen(req, timeout=float(timeout_s)) as resp:
            return int(resp.status)
    except urllib.error.HTTPError as e:
        detail = ""
        try:
            detail = e.read().decode("utf-8", errors="replace")
        except OSError:
            detail = ""
        raise NotificationError(f"HTTP {e.code} from webhook. {detail[:200]}".strip()) from e
    except urllib.error.URLError as e:
        raise NotificationError(f"Network error posting to webhook: {e}") from e
    except TimeoutError as e:
        raise NotificationError(f"Timed out posting to webhook after {timeout_s}s") from e


class WebhookSink:
    """Delivers one `{"rows": [...]}` POST per completed request. Blocking."""

    def __init__(self, url: str | None = None, *, timeout_s: float = 30.0) -> None:
        self._url = url if url is not None else webhook_url_from_env()
        self._timeout_s = timeout_s

    def deliver(self, books: Sequence[Book]) -> int:
        if not self._url:
            raise NotificationError("Missing BOOKFLOW_WEBHOOK_URL.")
        status = _http_post_json(self._url, {"rows": [book_to_row(b) for b in books]}, timeout_s=self._timeout_s)
        logger.info("webhook_delivered rows=%d status=%d", len(books), status)
        return status
