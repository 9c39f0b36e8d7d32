"""Custom exceptions for the Skema daemon."""

from __future__ import annotations

from typing import List, Optional


class AnnotationNotFound(LookupError):
    """Raised when an annotation (or change) id is unknown to the store."""

    def __init__(self, annotation_id: str):
        super().__init__(f"Annotation not found: {annotation_id}")
        self.annotation_id = annotation_id


class InvalidTransition(ValueError):
    """Raised when a lifecycle event is not allowed from the record's current state."""

    def __init__(self, annotation_id: str, current: str, event: str):
        super().__init__(f"Cannot apply '{event}' to annotation {annotation_id} in state '{current}'")
        self.annotation_id = annotation_id
        self.current = current
        self.event = event


class AgentFailure(RuntimeError):
    """The agent process errored or exited non-zero. Recoverable: the annotation can be re-submitted."""

    def __init__(self, reason: str, *, exit_code: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.exit_code = exit_code


class AgentTimeout(AgentFailure):
    """The agent exceeded its allotted time and was terminated."""

    def __init__(self, timeout_s: float, *, exit_code: Optional[int] = None):
        super().__init__(f"Timeout: agent exceeded {timeout_s:g}s", exit_code=exit_code)
        self.timeout_s = timeout_s


class RevertConflict(RuntimeError):
    """A later change by another annotation touched the same paths."""

    def __init__(self, annotation_id: str, paths: List[str], blocking: List[str]):
        super().__init__(
            f"Cannot revert {annotation_id}: {', '.join(paths)} changed later by {', '.join(blocking)}"
        )
        self.annotation_id = annotation_id
        self.paths = paths
        self.blocking = blocking


class SnapshotError(RuntimeError):
    """A git plumbing command used for snapshots failed."""

    def __init__(self, detail: str, *, returncode: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.returncode = returncode


class StoreCorruptionError(RuntimeError):
    """Persisted annotation data could not be loaded. Fatal for the daemon."""
