from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Mapping

from .aggregator import aggregate_children
from .contracts import STAGE_CONTRACTS, StageContract, validate_tree
from .dispatcher import Dispatcher
from .errors import FlowFailedError
from .node import JobNode, NodeStatus, StageType


logger = logging.getLogger(__name__)


# (failed root, failing node, original error)
FlowFailureHook = Callable[[JobNode, JobNode, BaseException], None]
# (node, event_type, payload)
NodeEventHook = Callable[[JobNode, str, dict[str, Any]], None]


class FlowHandle:
    """Completion handle for one submitted flow."""

    def __init__(self, root: JobNode) -> None:
        self.root = root
        self.failed_node: JobNode | None = None
        self._done = asyncio.Event()

    @property
    def flow_key(self) -> str:
        return self.root.flow_key

    def done(self) -> bool:
        return self._done.is_set()

    def _finish(self) -> None:
        self._done.set()

    async def wait(self) -> Any:
        """Wait for the root to finish; return its result or raise FlowFailedError."""
        await self._done.wait()
        if self.root.status is NodeStatus.FAILED:
            failed = self.failed_node or self.root
            cause = failed.error or self.root.error
            raise FlowFailedError(self.flow_key, failed.stage.value, cause if cause is not None else RuntimeError("unknown"))
        return self.root.result


class FlowScheduler:
    """Runs job trees on the current event loop.

    Leaves are scheduled at submission; each completion marks the parent ready
    once all of its siblings have completed. At most `max_workers` node
    executors run at a time; nodes awaiting I/O do not hold up other ready
    nodes beyond that bound.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        *,
        max_workers: int = 4,
        contracts: Mapping[StageType, StageContract] = STAGE_CONTRACTS,
        on_flow_failed: FlowFailureHook | None = None,
        on_node_event: NodeEventHook | None = None,
    ) -> None:
        if int(max_workers) < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers!r}")
        self._dispatcher = dispatcher
        self._max_workers = int(max_workers)
        self._slots = asyncio.Semaphore(self._max_workers)
        self._contracts = contracts
        self._on_flow_failed = on_flow_failed
        self._on_node_event = on_node_event
        self._flows: dict[str, FlowHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def in_flight(self, flow_key: str) -> FlowHandle | None:
        return self._flows.get(flow_key)

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "max_workers": self._max_workers,
            "flows_in_flight": sorted(self._flows),
            "tasks_running": len(self._tasks),
        }

    def submit(self, root: JobNode) -> FlowHandle:
        """Validate and schedule a flow.

        Submitting a root whose flow key is already in flight is a no-op that
        returns the existing handle.
        """
        existing = self._flows.get(root.flow_key)
        if existing is not None:
            logger.info("flow_already_in_flight flow=%s", root.flow_key)
            return existing

        validate_tree(root, self._contracts)
        handle = FlowHandle(root)
        self._flows[root.flow_key] = handle
        logger.info("flow_submitted flow=%s nodes=%d", root.flow_key, sum(1 for _ in root.walk()))
        for leaf in root.leaves():
            self._mark_ready(leaf)
        return handle

    async def drain(self) -> None:
        """Wait until no node task is running (tasks spawned meanwhile included)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _mark_ready(self, node: JobNode) -> None:
        node.status = NodeStatus.READY
        task = asyncio.get_running_loop().create_task(self._run(node), name=f"flow:{node.flow_key}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, node: JobNode) -> None:
        async with self._slots:
            if node.root().status is NodeStatus.FAILED:
                # An unrelated branch already failed the flow; nothing downstream will consume this.
                self._fail(node, node.root().error or RuntimeError("flow already failed"), propagate=False)
                return

            node.status = NodeStatus.RUNNING
            self._emit(node, "node_started", {"children": len(node.children)})
            logger.info("node_started stage=%s request_id=%s", node.stage.value, node.request_id)
            try:
                children_results = aggregate_children(node, self._contracts)
                node.release_children()
                result = await self._dispatcher.dispatch(node, children_results)
            except Exception as e:
                logger.error(
                    "node_failed stage=%s request_id=%s error=%s: %s",
                    node.stage.value,
                    node.request_id,
                    type(e).__name__,
                    e,
                )
                self._fail(node, e)
                return

        self._complete(node, result)

    def _complete(self, node: JobNode, result: Any) -> None:
        node.result = result
        node.status = NodeStatus.COMPLETED
        self._emit(node, "node_completed", {"result_size": len(result) if isinstance(result, list) else None})
        logger.info("node_completed stage=%s request_id=%s", node.stage.value, node.request_id)

        parent = node.parent
        if parent is None:
            self._finish(node)
            return
        if parent.status is not NodeStatus.WAITING:
            # Parent already failed through a sibling; this result is discarded.
            return
        if parent.children_completed():
            self._mark_ready(parent)

    def _fail(self, node: JobNode, error: BaseException, *, propagate: bool = True) -> None:
        node.status = NodeStatus.FAILED
        node.error = error
        if not propagate:
            return
        self._emit(node, "node_failed", {"error": str(error), "error_type": type(error).__name__})

        root = node
        for ancestor in node.ancestors():
            root = ancestor
            if ancestor.status is NodeStatus.FAILED:
                # Ancestor chain already failed by an earlier sibling.
                return
            ancestor.status = NodeStatus.FAILED
            ancestor.error = error

        handle = self._flows.get(root.flow_key)
        if handle is not None and handle.root is root:
            handle.failed_node = node
        self._emit(root, "flow_failed", {"stage": node.stage.value, "error": str(error)})
        if self._on_flow_failed is not None:
            try:
                self._on_flow_failed(root, node, error)
            except Exception:
                logger.exception("flow_failure_hook_failed flow=%s", root.flow_key)
        self._finish(root)

    def _finish(self, root: JobNode) -> None:
        handle = self._flows.pop(root.flow_key, None)
        if handle is None or handle.root is not root:
            return
        logger.info("flow_finished flow=%s status=%s", root.flow_key, root.status.value)
        handle._finish()

    def _emit(self, node: JobNode, event_type: str, payload: dict[str, Any]) -> None:
        if self._on_node_event is None:
            return
        try:
            self._on_node_event(node, event_type, {"stage": node.stage.value, **payload})
        except Exception:
            logger.exception("node_event_hook_failed event=%s flow=%s", event_type, node.flow_key)
