from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from bookflow.flow.batching import partition
from bookflow.flow.contracts import validate_tree
from bookflow.flow.node import JobNode, StageType
from bookflow.models import Book

from .tracker import RequestStateTracker


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchPayload:
    request_id: str
    topic: str


@dataclass(frozen=True)
class ScorePayload:
    request_id: str
    topic: str


@dataclass(frozen=True)
class RequestPayload:
    request_id: str


def build_fetch_flow(request_id: str, topic: str) -> JobNode:
    return JobNode(StageType.FETCH_SOURCE, request_id=request_id, payload=FetchPayload(request_id, topic))


class FlowBuilder:
    """Turns one fetch result into the enrichment tree:

        notify
          finalize-request-status
            aggregate-and-score
              enrich-item-batch x ceil(N / batch_size)

    Zero candidates short-circuit: the request is marked done and no tree is built.
    """

    def __init__(self, tracker: RequestStateTracker, *, batch_size: int) -> None:
        if int(batch_size) < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size!r}")
        self._tracker = tracker
        self._batch_size = int(batch_size)

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def build(self, request_id: str, topic: str, books: Sequence[Book]) -> JobNode | None:
        batches = partition(list(books), self._batch_size)
        if not batches:
            logger.info("no_candidates request_id=%s topic=%r", request_id, topic)
            self._tracker.mark_done(request_id)
            return None

        leaves = [
            JobNode(StageType.ENRICH_ITEM_BATCH, request_id=request_id, payload=batch)
            for batch in batches
        ]
        score = JobNode(
            StageType.AGGREGATE_AND_SCORE,
            request_id=request_id,
            payload=ScorePayload(request_id, topic),
            children=leaves,
        )
        finalize = JobNode(
            StageType.FINALIZE_REQUEST_STATUS,
            request_id=request_id,
            payload=RequestPayload(request_id),
            children=[score],
        )
        root = JobNode(
            StageType.NOTIFY,
            request_id=request_id,
            payload=RequestPayload(request_id),
            children=[finalize],
        )
        validate_tree(root)
        logger.info(
            "flow_built request_id=%s books=%d batches=%s",
            request_id,
            len(books),
            [len(b) for b in batches],
        )
        return root
