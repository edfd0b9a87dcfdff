from __future__ import annotations

from typing import Any, Mapping

from .contracts import STAGE_CONTRACTS, ChildrenMode, StageContract, contract_for
from .errors import FlowError
from .node import JobNode, NodeStatus, StageType


class ChildrenNotCompleteError(FlowError):
    pass


def aggregate_children(
    node: JobNode, contracts: Mapping[StageType, StageContract] = STAGE_CONTRACTS
) -> Any:
    """Resolve a node's children into the input its executor consumes.

    Results are taken in child-declaration order, never completion order.
    Leaf stages get None. Calling this before every child is completed is a
    scheduler bug and raises.
    """
    mode = contract_for(node.stage, contracts).children_mode
    if mode is ChildrenMode.NONE:
        return None

    pending = [c for c in node.children if c.status is not NodeStatus.COMPLETED]
    if pending:
        raise ChildrenNotCompleteError(
            f"{node!r} has {len(pending)} child(ren) not completed: {[c.status.value for c in pending]}"
        )

    if mode is ChildrenMode.KEYED:
        return {index: child.result for index, child in enumerate(node.children)}

    flat: list[Any] = []
    for child in node.children:
        result = child.result
        if not isinstance(result, list):
            raise FlowError(f"{child.stage.value} produced {type(result).__name__}, expected a list")
        flat.extend(result)
    return flat
