from __future__ import annotations

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from skema_daemon.core_models import utc_now_iso
from skema_daemon.exceptions import AgentFailure, AgentTimeout

EventType = Literal["init", "message", "tool_use", "tool_result", "error", "debug", "done"]


class ProgressEvent(BaseModel):
    """One event streamed from an agent run to the submitting client."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: EventType
    timestamp: str = Field(default_factory=utc_now_iso)
    content: Optional[str] = None
    label: Optional[str] = None
    role: Optional[Literal["user", "assistant"]] = None
    tool_name: Optional[str] = None
    tool_id: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    status: Optional[str] = None
    code: Optional[int] = None
    provider: Optional[str] = None
    annotation_id: Optional[str] = Field(None, alias="annotationId")

    def wire_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Outcome(BaseModel):
    """Terminal result of one agent run: ``Success(summary)`` or ``Failure(reason)``."""
    success: bool
    summary: str = ""
    reason: Optional[str] = None
    timed_out: bool = False
    cancelled: bool = False
    exit_code: Optional[int] = None

    @classmethod
    def succeeded(cls, summary: str, exit_code: int = 0) -> "Outcome":
        return cls(success=True, summary=summary, exit_code=exit_code)

    @classmethod
    def failed(cls, reason: str, *, timed_out: bool = False, cancelled: bool = False,
               exit_code: Optional[int] = None) -> "Outcome":
        return cls(success=False, reason=reason, timed_out=timed_out, cancelled=cancelled, exit_code=exit_code)

    @classmethod
    def from_failure(cls, exc: AgentFailure) -> "Outcome":
        return cls.failed(exc.reason, timed_out=isinstance(exc, AgentTimeout), exit_code=exc.exit_code)
