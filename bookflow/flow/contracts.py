from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from .errors import FlowBuildError
from .node import JobNode, NodeStatus, StageType


class ResultKind(Enum):
    CANDIDATES = "candidates"
    BOOK_BATCH = "book_batch"
    BOOK_LIST = "book_list"
    NOTHING = "nothing"


class ChildrenMode(Enum):
    NONE = "none"  # leaf stage; no children allowed
    FLAT = "flat"  # concatenation of children's lists, in declaration order
    KEYED = "keyed"  # {child_index: result}, in declaration order


@dataclass(frozen=True)
class StageContract:
    produces: ResultKind
    children_mode: ChildrenMode = ChildrenMode.NONE
    # Result kind every child must produce (None for leaf stages).
    consumes: ResultKind | None = None


STAGE_CONTRACTS: Mapping[StageType, StageContract] = {
    StageType.FETCH_SOURCE: StageContract(produces=ResultKind.CANDIDATES),
    StageType.ENRICH_ITEM_BATCH: StageContract(produces=ResultKind.BOOK_BATCH),
    StageType.AGGREGATE_AND_SCORE: StageContract(
        produces=ResultKind.BOOK_LIST,
        children_mode=ChildrenMode.FLAT,
        consumes=ResultKind.BOOK_BATCH,
    ),
    StageType.FINALIZE_REQUEST_STATUS: StageContract(
        produces=ResultKind.BOOK_LIST,
        children_mode=ChildrenMode.FLAT,
        consumes=ResultKind.BOOK_LIST,
    ),
    StageType.NOTIFY: StageContract(
        produces=ResultKind.NOTHING,
        children_mode=ChildrenMode.FLAT,
        consumes=ResultKind.BOOK_LIST,
    ),
}


def contract_for(stage: StageType, contracts: Mapping[StageType, StageContract] = STAGE_CONTRACTS) -> StageContract:
    try:
        return contracts[stage]
    except KeyError as e:
        raise FlowBuildError(f"No aggregation contract for stage {stage.value!r}") from e


def validate_tree(root: JobNode, contracts: Mapping[StageType, StageContract] = STAGE_CONTRACTS) -> None:
    """Check every parent/child pair against the producer/consumer contracts.

    Raises FlowBuildError on the first mismatch, before anything is scheduled.
    """
    if root.parent is not None:
        raise FlowBuildError(f"{root!r} is not a root node")

    seen: set[int] = set()
    for node in root.walk():
        if id(node) in seen:
            raise FlowBuildError(f"{node!r} appears more than once in the tree")
        seen.add(id(node))

        if node.request_id != root.request_id:
            raise FlowBuildError(
                f"{node!r} belongs to request {node.request_id!r}, expected {root.request_id!r}"
            )
        if node.status is not NodeStatus.WAITING:
            raise FlowBuildError(f"{node!r} must be waiting at submission, got {node.status.value}")

        contract = contract_for(node.stage, contracts)
        if contract.children_mode is ChildrenMode.NONE:
            if node.children:
                raise FlowBuildError(f"{node.stage.value} is a leaf stage but has {len(node.children)} children")
            continue

        if not node.children:
            raise FlowBuildError(f"{node.stage.value} consumes children results but has none")
        for child in node.children:
            produced = contract_for(child.stage, contracts).produces
            if produced is not contract.consumes:
                raise FlowBuildError(
                    f"{node.stage.value} consumes {contract.consumes.value if contract.consumes else None} "
                    f"but child {child.stage.value} produces {produced.value}"
                )
