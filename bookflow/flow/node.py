from __future__ import annotations

from enum import Enum
from typing import Any, Iterator


class StageType(Enum):
    """Closed set of job types. Every member must have a registered executor."""

    FETCH_SOURCE = "fetch-source"
    ENRICH_ITEM_BATCH = "enrich-item-batch"
    AGGREGATE_AND_SCORE = "aggregate-and-score"
    FINALIZE_REQUEST_STATUS = "finalize-request-status"
    NOTIFY = "notify"


class NodeStatus(Enum):
    WAITING = "waiting"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_NODE_STATUSES = frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED})


class JobNode:
    def __init__(
        self,
        stage: StageType,
        *,
        request_id: str,
        payload: Any = None,
        children: list["JobNode"] | None = None,
    ) -> None:
        self.stage = stage
        self.request_id = request_id
        self.payload = payload
        self.children: list[JobNode] = []
        self.parent: JobNode | None = None
        self.status = NodeStatus.WAITING
        self.result: Any = None
        self.error: BaseException | None = None
        for child in children or []:
            self.add_child(child)

    def __repr__(self) -> str:
        return f"JobNode({self.stage.value}, request_id={self.request_id!r}, status={self.status.value})"

    def add_child(self, child: "JobNode") -> None:
        if child.parent is not None:
            raise ValueError(f"{child!r} already has a parent")
        self.children.append(child)
        child.parent = self

    @property
    def flow_key(self) -> str:
        """Identity of the flow rooted at this node (one in-flight flow per key)."""
        return f"{self.request_id}/{self.stage.value}"

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_NODE_STATUSES

    def root(self) -> "JobNode":
        node = self
        while node.parent is not None:
            node = node.parent
        return node

    def ancestors(self) -> Iterator["JobNode"]:
        node = self.parent
        while node is not None:
            yield node
            node = node.parent

    def walk(self) -> Iterator["JobNode"]:
        """Depth-first, pre-order."""
        yield self
        for child in self.children:
            yield from child.walk()

    def leaves(self) -> list["JobNode"]:
        return [n for n in self.walk() if n.is_leaf]

    def children_completed(self) -> bool:
        return all(c.status is NodeStatus.COMPLETED for c in self.children)

    def release_children(self) -> None:
        # Children results are only kept until the parent has consumed them.
        for child in self.children:
            child.result = None
