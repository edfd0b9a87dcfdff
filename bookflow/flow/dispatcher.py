from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping

from .errors import UnknownStageType
from .node import JobNode, StageType


# (payload, aggregated children results) -> result
StageExecutor = Callable[[Any, Any], Awaitable[Any]]


class Dispatcher:
    """Routing table from stage tag to executor.

    The table must cover every StageType; an incomplete table is rejected at
    construction so a missing stage never surfaces mid-flow.
    """

    def __init__(self, executors: Mapping[StageType, StageExecutor]) -> None:
        unknown = [k for k in executors if not isinstance(k, StageType)]
        if unknown:
            raise UnknownStageType(f"Not stage types: {unknown!r}")
        missing = [s.value for s in StageType if s not in executors]
        if missing:
            raise UnknownStageType(f"No executor registered for stage(s): {missing}")
        self._executors: dict[StageType, StageExecutor] = dict(executors)

    def resolve(self, stage: Any) -> StageExecutor:
        executor = self._executors.get(stage) if isinstance(stage, StageType) else None
        if executor is None:
            raise UnknownStageType(f"Unknown stage type: {stage!r}")
        return executor

    async def dispatch(self, node: JobNode, children_results: Any) -> Any:
        executor = self.resolve(node.stage)
        return await executor(node.payload, children_results)
