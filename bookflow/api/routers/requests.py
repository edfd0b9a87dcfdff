from __future__ import annotations

import hashlib
import json
import logging
from typing import Any

from fastapi import APIRouter, Header, Query, Request
from pydantic import BaseModel, Field

from bookflow.api.errors import APIError
from bookflow.api.pagination import Cursor, CursorError, decode_optional_cursor, encode_cursor
from bookflow.storage.sqlite_store import REQUEST_STATUSES, SQLiteStore, request_row_to_dict


logger = logging.getLogger(__name__)

router = APIRouter()


class CreateRequestBody(BaseModel):
    topic: str = Field(min_length=1, description="Search topic, e.g. 'python programming'.")


def _submit_to_worker(request: Request, request_id: str, topic: str) -> bool:
    worker = getattr(request.app.state, "flow_worker", None)
    if worker is None or not worker.running:
        # Stays pending; the worker resubmits pending requests when it starts.
        return False
    try:
        worker.submit(request_id, topic)
    except RuntimeError as e:
        logger.warning("submit_failed request_id=%s error=%s", request_id, e)
        return False
    return True


@router.post("/requests")
def create_request(
    body: CreateRequestBody,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> dict[str, Any]:
    topic = body.topic.strip()
    if not topic:
        raise APIError(status_code=400, code="invalid_argument", message="topic must not be blank.")

    # Idempotency: hash the raw request body.
    req_json = json.dumps(body.model_dump(mode="json"), ensure_ascii=False, sort_keys=True, separators=(",", ":"))
    request_hash = hashlib.sha256(req_json.encode("utf-8")).hexdigest()

    store = SQLiteStore()
    try:
        with store.transaction(mode="IMMEDIATE"):
            if idempotency_key:
                existing = store.get_idempotency(str(idempotency_key))
                if existing is not None:
                    if str(existing["request_hash"]) != request_hash:
                        raise APIError(
                            status_code=409,
                            code="conflict",
                            message="Idempotency-Key was already used with a different request body.",
                        )
                    return json.loads(str(existing["response_json"]))

            rec = store.create_request(topic=topic)
            response: dict[str, Any] = {
                "request": {
                    "request_id": rec.request_id,
                    "created_at": rec.created_at,
                    "updated_at": rec.created_at,
                    "topic": rec.topic,
                    "status": rec.status,
                    "error": None,
                }
            }
            if idempotency_key:
                store.put_idempotency(
                    key=str(idempotency_key),
                    request_hash=request_hash,
                    response_json=json.dumps(response, ensure_ascii=False, separators=(",", ":")),
                )
    finally:
        store.close()

    response["submitted"] = _submit_to_worker(request, rec.request_id, rec.topic)
    return response


@router.get("/requests")
def list_requests(
    limit: int = Query(default=50, ge=1, le=200),
    cursor: str | None = Query(default=None),
    status: list[str] | None = Query(default=None),
) -> dict[str, Any]:
    unknown = [s for s in status or [] if s not in REQUEST_STATUSES]
    if unknown:
        raise APIError(
            status_code=400,
            code="invalid_argument",
            message="Unknown request status.",
            details={"status": unknown, "allowed": list(REQUEST_STATUSES)},
        )
    try:
        cursor_key = decode_optional_cursor(cursor)
    except CursorError as e:
        raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

    store = SQLiteStore()
    try:
        page = store.list_requests_page(limit=int(limit), cursor=cursor_key, statuses=status or None)
    finally:
        store.close()

    next_cursor = page.get("next_cursor")
    if next_cursor is not None:
        created_at, request_id = next_cursor
        page["next_cursor"] = encode_cursor(Cursor(created_at=float(created_at), item_id=str(request_id)))
    return page


def _require_request(store: SQLiteStore, request_id: str) -> dict[str, Any]:
    row = store.get_request(request_id=request_id)
    if row is None:
        raise APIError(status_code=404, code="not_found", message="Request not found.")
    return request_row_to_dict(row)


@router.get("/requests/{request_id}")
def get_request(request_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        req = _require_request(store, request_id)
        req["books"] = store.count_books(request_id=request_id)
        return {"request": req}
    finally:
        store.close()


@router.get("/requests/{request_id}/books")
def list_request_books(request_id: str) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        _require_request(store, request_id)
        books = store.list_books(request_id=request_id)
        return {"items": [b.model_dump(mode="json") for b in books]}
    finally:
        store.close()


@router.get("/requests/{request_id}/events")
def list_request_events(request_id: str, event_type: str | None = Query(default=None)) -> dict[str, Any]:
    store = SQLiteStore()
    try:
        _require_request(store, request_id)
        return {"items": store.list_events(request_id=request_id, event_type=event_type)}
    finally:
        store.close()
