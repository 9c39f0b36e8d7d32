from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Wire format is camelCase (matches the browser overlay); Python side uses snake_case.
_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class BoundingBox(BaseModel):
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0


class ViewportInfo(BaseModel):
    model_config = _CAMEL

    width: float = 0.0
    height: float = 0.0
    scroll_x: float = 0.0
    scroll_y: float = 0.0


class DOMElement(BaseModel):
    """One element of a (possibly multi-element) DOM selection."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    selector: str = ""
    tag_name: str = ""
    element_path: str = ""
    text: str = ""
    bounding_box: Optional[BoundingBox] = None
    css_classes: Optional[str] = None
    attributes: Optional[Dict[str, str]] = None


class Annotation(BaseModel):
    """An annotation as captured by the browser overlay.

    Unknown fields sent by the overlay are kept (``extra="allow"``) so nothing is
    lost between submission and export.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: Optional[str] = None
    type: Literal["dom_selection", "drawing", "gesture"] = "dom_selection"
    # Target descriptor
    selector: Optional[str] = None
    tag_name: Optional[str] = None
    element_path: Optional[str] = None
    text: Optional[str] = None
    bounding_box: Optional[BoundingBox] = None
    css_classes: Optional[str] = None
    attributes: Optional[Dict[str, str]] = None
    is_multi_select: Optional[bool] = None
    elements: Optional[List[DOMElement]] = None
    # Drawing metadata
    drawing_svg: Optional[str] = None
    drawing_image: Optional[str] = None
    extracted_text: Optional[str] = None
    nearby_elements: Optional[List[Dict[str, Any]]] = None
    # Gesture
    gesture: Optional[str] = None
    # Page context
    comment: Optional[str] = None
    timestamp: Optional[int] = None
    pathname: Optional[str] = None
    viewport: Optional[ViewportInfo] = None

    def wire_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class AnnotationStatus(str, Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"

    @property
    def is_terminal(self) -> bool:
        return self in (AnnotationStatus.RESOLVED, AnnotationStatus.DISMISSED)


class LifecycleEvent(str, Enum):
    ACKNOWLEDGE = "acknowledge"
    RESOLVE = "resolve"
    DISMISS = "dismiss"
    FAIL = "fail"      # acknowledged -> pending (retryable)
    REOPEN = "reopen"  # terminal -> pending (explicit reset on re-submit)


class StoredAnnotation(BaseModel):
    """An annotation owned by the store, with its lifecycle state."""
    model_config = _CAMEL

    annotation: Annotation
    comment: str = ""
    status: AnnotationStatus = AnnotationStatus.PENDING
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)
    resolved_by: Optional[Literal["human", "agent"]] = None
    resolution_summary: Optional[str] = None
    dismissal_reason: Optional[str] = None
    last_error: Optional[str] = None
    attempts: int = 0
    vision_description: Optional[str] = None
    change_ids: List[str] = Field(default_factory=list)

    @property
    def id(self) -> str:
        # The store always assigns an id before a record is stored.
        return self.annotation.id or ""

    def wire_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ChangeRecord(BaseModel):
    """One reversible edit produced by processing one annotation."""
    model_config = _CAMEL

    id: str
    annotation_id: str
    seq: int = Field(description="Monotonic creation order across all change records")
    pre_snapshot: str = Field(description="Tree id captured before the agent ran")
    post_snapshot: str = Field(description="Tree id captured after the agent finished")
    touched_paths: List[str] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now_iso)
    reverted: bool = False


class AnnotationExport(BaseModel):
    """Versioned document for external tooling and archival."""
    version: str = "1.0"
    timestamp: str = Field(default_factory=utc_now_iso)
    viewport: ViewportInfo = Field(default_factory=ViewportInfo)
    pathname: str = "/"
    annotations: List[Annotation] = Field(default_factory=list)
