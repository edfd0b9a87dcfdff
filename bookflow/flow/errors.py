from __future__ import annotations


class FlowError(RuntimeError):
    pass


class CollaboratorError(FlowError):
    """An external collaborator (source, extractor, scorer, store, sink) failed."""


class SourceFetchError(CollaboratorError):
    pass


class ScoringError(CollaboratorError):
    pass


class UnmatchedResultError(ScoringError):
    def __init__(self, missing_ids: list[str]) -> None:
        self.missing_ids = list(missing_ids)
        super().__init__(f"Scorer returned no entry for {len(self.missing_ids)} item(s): {self.missing_ids[:5]}")


class StoreError(CollaboratorError):
    pass


class NotificationError(CollaboratorError):
    pass


class UnknownStageType(FlowError):
    """Raised at dispatch for a stage tag with no registered executor."""


class FlowBuildError(FlowError):
    pass


class FlowFailedError(FlowError):
    def __init__(self, flow_key: str, stage: str, cause: BaseException) -> None:
        self.flow_key = flow_key
        self.stage = stage
        self.cause = cause
        super().__init__(f"Flow {flow_key} failed at {stage}: {cause}")
