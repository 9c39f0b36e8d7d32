"""Versioned annotation export document."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from skema_daemon.core_models import (
    AnnotationExport,
    AnnotationStatus,
    BoundingBox,
    StoredAnnotation,
    ViewportInfo,
)

EXPORT_VERSION = "1.0"

# DOM selections always carry these keys in an export, even when the overlay left them out.
_DOM_DEFAULTS = {"selector": "", "tag_name": "", "element_path": "", "text": "", "pathname": "/"}


def build_export(
    records: Iterable[StoredAnnotation],
    *,
    viewport: Optional[ViewportInfo] = None,
    pathname: Optional[str] = None,
    status: Optional[AnnotationStatus] = None,
) -> AnnotationExport:
    """Build the export document for *records* (insertion order kept).

    Viewport and pathname default to those of the most recent annotation.
    """
    annotations = []
    last = None
    for record in records:
        if status is not None and record.status is not status:
            continue
        ann = record.annotation
        update = {}
        if ann.type == "dom_selection":
            update.update({k: v for k, v in _DOM_DEFAULTS.items() if getattr(ann, k) is None})
        if ann.bounding_box is None:
            update["bounding_box"] = BoundingBox()
        if ann.timestamp is None:
            update["timestamp"] = _epoch_ms(record.created_at)
        if record.comment:
            update["comment"] = record.comment
        annotations.append(ann.model_copy(update=update, deep=True))
        last = ann

    return AnnotationExport(
        version=EXPORT_VERSION,
        viewport=viewport or (last.viewport if last and last.viewport else ViewportInfo()),
        pathname=pathname or (last.pathname if last and last.pathname else "/"),
        annotations=annotations,
    )


def export_dict(document: AnnotationExport) -> dict:
    data = document.model_dump(mode="json", by_alias=True, exclude_none=True)
    # Nested annotation models serialise with their own camelCase aliases.
    data["annotations"] = [a.wire_dict() for a in document.annotations]
    return data


def _epoch_ms(iso: str) -> int:
    return int(datetime.fromisoformat(iso).timestamp() * 1000)
