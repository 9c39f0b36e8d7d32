from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional

from skema_daemon.core_models import Annotation


class ErrorResponse(BaseModel):
    """Body returned for every handled HTTP error."""
    error_code: Optional[str] = Field(None, description="A unique code identifying the type of error.")
    error_message: str = Field(description="A human-readable error message.")
    technical_details: Optional[str] = Field(None, description="Optional technical details for debugging.")


# --- Live channel / generate requests ---

class SubmitRequest(BaseModel):
    annotation: Annotation
    comment: Optional[str] = None


class RevertRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    annotation_id: str = Field(alias="annotationId")


# --- Control protocol ---

class ResolveRequest(BaseModel):
    summary: Optional[str] = Field(None, description="What the agent changed.")
    resolved_by: Literal["agent", "human"] = "agent"


class DismissRequest(BaseModel):
    reason: str = Field(..., min_length=1, description="Why the annotation will not be addressed.")
    resolved_by: Literal["agent", "human"] = "agent"


class WatchResponse(BaseModel):
    status: Literal["annotation", "no_new_work"]
    annotation: Optional[Dict[str, Any]] = None
    cursor: Optional[int] = Field(None, description="Pass back as `after` to continue from this point.")


class StatusResponse(BaseModel):
    status: Literal["ok"] = "ok"
    mode: str
    provider: str
    cwd: str
    counts: Dict[str, int]
    running: Optional[str] = None
    queued: List[str] = Field(default_factory=list)
    agent_available: bool = True
