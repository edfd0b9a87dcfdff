from __future__ import annotations

import asyncio
from typing import Any

import pytest

from bookflow.flow.contracts import STAGE_CONTRACTS, ChildrenMode, ResultKind, StageContract
from bookflow.flow.dispatcher import Dispatcher
from bookflow.flow.errors import FlowBuildError, FlowFailedError
from bookflow.flow.node import JobNode, NodeStatus, StageType
from bookflow.flow.scheduler import FlowScheduler


def _table(log: list[Any]) -> dict[StageType, Any]:
    async def leaf(payload: Any, _children: Any) -> Any:
        delay, items = payload
        await asyncio.sleep(delay)
        log.append(("leaf_done", items))
        if isinstance(items, Exception):
            raise items
        return items

    async def passthrough_named(name: str, children: Any) -> Any:
        log.append((name, children))
        return children

    async def fetch(payload: Any, _children: Any) -> Any:
        return payload

    async def aggregate(_payload: Any, children: Any) -> Any:
        return await passthrough_named("aggregate", children)

    async def finalize(_payload: Any, children: Any) -> Any:
        return await passthrough_named("finalize", children)

    async def notify(_payload: Any, children: Any) -> None:
        log.append(("notify", children))
        return None

    return {
        StageType.FETCH_SOURCE: fetch,
        StageType.ENRICH_ITEM_BATCH: leaf,
        StageType.AGGREGATE_AND_SCORE: aggregate,
        StageType.FINALIZE_REQUEST_STATUS: finalize,
        StageType.NOTIFY: notify,
    }


def _tree(leaf_payloads: list[tuple[float, Any]], request_id: str = "req_1") -> JobNode:
    leaves = [JobNode(StageType.ENRICH_ITEM_BATCH, request_id=request_id, payload=p) for p in leaf_payloads]
    score = JobNode(StageType.AGGREGATE_AND_SCORE, request_id=request_id, children=leaves)
    finalize = JobNode(StageType.FINALIZE_REQUEST_STATUS, request_id=request_id, children=[score])
    return JobNode(StageType.NOTIFY, request_id=request_id, children=[finalize])


def test_fan_in_uses_declaration_order_not_completion_order() -> None:
    log: list[Any] = []

    async def main() -> None:
        scheduler = FlowScheduler(Dispatcher(_table(log)), max_workers=4)
        handle = scheduler.submit(_tree([(0.05, ["a", "b"]), (0.0, ["c"]), (0.02, ["d"])]))
        assert await handle.wait() is None
        assert handle.root.status is NodeStatus.COMPLETED

    asyncio.run(main())

    leaf_order = [items for kind, items in log if kind == "leaf_done"]
    assert leaf_order == [["c"], ["d"], ["a", "b"]]
    assert ("aggregate", ["a", "b", "c", "d"]) in log
    assert log[-1] == ("notify", ["a", "b", "c", "d"])


def test_parent_runs_only_after_every_child_completed() -> None:
    log: list[Any] = []

    async def main() -> None:
        scheduler = FlowScheduler(Dispatcher(_table(log)), max_workers=1)
        await scheduler.submit(_tree([(0.01, [1]), (0.0, [2]), (0.0, [3])])).wait()

    asyncio.run(main())

    kinds = [kind for kind, _ in log]
    assert kinds == ["leaf_done", "leaf_done", "leaf_done", "aggregate", "finalize", "notify"]


def test_failed_leaf_fails_ancestors_without_running_them() -> None:
    log: list[Any] = []
    failures: list[tuple[JobNode, JobNode, BaseException]] = []
    boom = RuntimeError("extractor exploded")

    async def main() -> tuple[JobNode, FlowScheduler]:
        scheduler = FlowScheduler(
            Dispatcher(_table(log)),
            max_workers=4,
            on_flow_failed=lambda root, node, err: failures.append((root, node, err)),
        )
        root = _tree([(0.02, ["a"]), (0.0, boom), (0.02, ["c"])])
        handle = scheduler.submit(root)
        with pytest.raises(FlowFailedError) as e:
            await handle.wait()
        assert e.value.stage == "enrich-item-batch"
        assert e.value.cause is boom
        await scheduler.drain()
        return root, scheduler

    root, scheduler = asyncio.run(main())

    assert [kind for kind, _ in log if kind != "leaf_done"] == []
    finalize = root.children[0]
    score = finalize.children[0]
    assert root.status is NodeStatus.FAILED
    assert finalize.status is NodeStatus.FAILED
    assert score.status is NodeStatus.FAILED
    assert len(failures) == 1
    assert failures[0][0] is root
    assert failures[0][1] is score.children[1]
    assert scheduler.in_flight(root.flow_key) is None


def test_failure_hook_error_does_not_break_the_scheduler() -> None:
    log: list[Any] = []

    def bad_hook(_root: JobNode, _node: JobNode, _err: BaseException) -> None:
        raise ValueError("hook bug")

    async def main() -> None:
        scheduler = FlowScheduler(Dispatcher(_table(log)), on_flow_failed=bad_hook)
        with pytest.raises(FlowFailedError):
            await scheduler.submit(_tree([(0.0, RuntimeError("x"))])).wait()

    asyncio.run(main())


def test_node_events_are_reported_with_stage() -> None:
    log: list[Any] = []
    events: list[tuple[str, str]] = []

    async def main() -> None:
        scheduler = FlowScheduler(
            Dispatcher(_table(log)),
            on_node_event=lambda node, event_type, payload: events.append((event_type, payload["stage"])),
        )
        await scheduler.submit(_tree([(0.0, [1])])).wait()

    asyncio.run(main())

    assert ("node_started", "enrich-item-batch") in events
    assert ("node_completed", "notify") == events[-1]
    assert sum(1 for e, _ in events if e == "node_completed") == 4


def test_duplicate_submit_returns_existing_handle() -> None:
    log: list[Any] = []

    async def main() -> None:
        scheduler = FlowScheduler(Dispatcher(_table(log)))
        first = scheduler.submit(_tree([(0.01, [1])]))
        second = scheduler.submit(_tree([(0.01, [2])]))
        assert second is first
        await first.wait()
        # Once finished, the same key can run again.
        third = scheduler.submit(_tree([(0.0, [3])]))
        assert third is not first
        await third.wait()

    asyncio.run(main())

    notified = [items for kind, items in log if kind == "notify"]
    assert notified == [[1], [3]]


def test_max_workers_bounds_concurrent_executors() -> None:
    log: list[Any] = []
    running = 0
    peak = 0

    async def leaf(payload: Any, _children: Any) -> Any:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return [payload]

    table = _table(log)
    table[StageType.ENRICH_ITEM_BATCH] = leaf

    async def run() -> None:
        scheduler = FlowScheduler(Dispatcher(table), max_workers=2)
        await scheduler.submit(_tree([(0.0, [i]) for i in range(8)])).wait()

    asyncio.run(run())

    assert peak == 2
    assert log[-1] == ("notify", [(0.0, [i]) for i in range(8)])


def test_keyed_aggregation_with_custom_contracts() -> None:
    log: list[Any] = []
    contracts = dict(STAGE_CONTRACTS)
    contracts[StageType.AGGREGATE_AND_SCORE] = StageContract(
        produces=ResultKind.BOOK_LIST,
        children_mode=ChildrenMode.KEYED,
        consumes=ResultKind.BOOK_BATCH,
    )

    async def main() -> Any:
        scheduler = FlowScheduler(Dispatcher(_table(log)), contracts=contracts)
        leaves = [
            JobNode(StageType.ENRICH_ITEM_BATCH, request_id="req_k", payload=(0.02, ["x"])),
            JobNode(StageType.ENRICH_ITEM_BATCH, request_id="req_k", payload=(0.0, ["y"])),
        ]
        root = JobNode(StageType.AGGREGATE_AND_SCORE, request_id="req_k", children=leaves)
        return await scheduler.submit(root).wait()

    assert asyncio.run(main()) == {0: ["x"], 1: ["y"]}


def test_invalid_trees_are_rejected_before_scheduling() -> None:
    log: list[Any] = []

    async def main() -> None:
        scheduler = FlowScheduler(Dispatcher(_table(log)))

        # notify consumes a book list, not raw batches
        bad_kind = JobNode(
            StageType.NOTIFY,
            request_id="req_x",
            children=[JobNode(StageType.ENRICH_ITEM_BATCH, request_id="req_x", payload=(0.0, [1]))],
        )
        with pytest.raises(FlowBuildError):
            scheduler.submit(bad_kind)

        # leaf stage with children
        bad_leaf = JobNode(
            StageType.ENRICH_ITEM_BATCH,
            request_id="req_y",
            children=[JobNode(StageType.ENRICH_ITEM_BATCH, request_id="req_y")],
        )
        with pytest.raises(FlowBuildError):
            scheduler.submit(bad_leaf)

        # fan-in stage without children
        with pytest.raises(FlowBuildError):
            scheduler.submit(JobNode(StageType.AGGREGATE_AND_SCORE, request_id="req_z"))

        assert scheduler.status_snapshot()["flows_in_flight"] == []

    asyncio.run(main())
    assert log == []
