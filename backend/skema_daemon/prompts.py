"""Centralised prompt definitions for agent runs.

Prompts are intentionally short; the agent CLI reads the project itself. Every
prompt is bounded by ``DaemonConfig.max_prompt_chars``.
"""

from __future__ import annotations

from typing import List, Optional

from skema_daemon.core_models import StoredAnnotation

FAST_DOM_SELECTION_PROMPT = "{comment}{target}. Make the change directly, no explanation needed."

DETAILED_DOM_SELECTION_PROMPT = """Make this code change: "{comment}"

Element: {element}
{extra}
Make minimal changes. No explanation needed."""

DRAWING_TO_CODE_PROMPT = """Interpret the user's sketch and implement it as a component in this project.

## User's Request
"{comment}"

## Drawing Context
{context}

## Guidelines
- Integrate with the existing page flow; do not use absolute pixel positions.
- Follow the project's existing component and styling conventions.
- Red marks in the drawing are instructions, not content.

Make the changes directly. No explanation needed."""

IMAGE_ANALYSIS_PROMPT = (
    "Analyze this UI wireframe sketch for a front-end developer. Describe every element, "
    "the layout, spacing, icons and text. Describe positions relative to each other "
    "(left/right, above/below, centered) rather than in pixels."
)

_TRUNCATION_MARK = "\n[...truncated]"


def build_prompt(
    stored: StoredAnnotation,
    *,
    fast_mode: bool = True,
    max_chars: int = 8000,
    vision_description: Optional[str] = None,
) -> str:
    """Build the agent prompt for *stored*, never longer than *max_chars*."""
    ann = stored.annotation
    comment = (stored.comment or ann.comment or "").strip()

    if ann.type == "drawing":
        prompt = _drawing_prompt(stored, vision_description or stored.vision_description)
    elif fast_mode and ann.type == "dom_selection":
        prompt = FAST_DOM_SELECTION_PROMPT.format(comment=comment or "Update this element", target=_fast_target(stored))
    else:
        prompt = _detailed_prompt(stored)
    return bound(prompt, max_chars)


def bound(prompt: str, max_chars: int) -> str:
    if len(prompt) <= max_chars:
        return prompt
    return prompt[: max_chars - len(_TRUNCATION_MARK)] + _TRUNCATION_MARK


def _fast_target(stored: StoredAnnotation) -> str:
    ann = stored.annotation
    if ann.text:
        return f' (target: "{ann.text[:50]}")'
    if ann.selector:
        return f" (target: `{ann.selector}`)"
    if ann.tag_name:
        return f" (target: <{ann.tag_name.lower()}>)"
    return ""


def _detailed_prompt(stored: StoredAnnotation) -> str:
    ann = stored.annotation
    comment = stored.comment or ann.comment or "No specific comment provided"
    extra: List[str] = []
    if ann.type == "gesture":
        box = ann.bounding_box
        where = f" at ({box.x:.0f}, {box.y:.0f})" if box else ""
        element = f"gesture: {ann.gesture or 'unknown'}{where}"
        if getattr(ann, "target", None):
            extra.append(f"Target: {getattr(ann, 'target')}")
    else:
        element = f"<{(ann.tag_name or 'unknown').lower()}>"
        if ann.selector:
            element += f" | selector: {ann.selector}"
        if ann.text:
            element += f' | text: "{ann.text[:100]}"'
        if ann.element_path:
            extra.append(f"Path: {ann.element_path}")
        if ann.css_classes:
            extra.append(f"Classes: {ann.css_classes}")
        if ann.elements and len(ann.elements) > 1:
            extra.append(f"{len(ann.elements)} elements selected")
    if ann.pathname:
        extra.append(f"Page: {ann.pathname}")
    return DETAILED_DOM_SELECTION_PROMPT.format(
        comment=comment,
        element=element,
        extra="\n".join(extra) + ("\n" if extra else ""),
    )


def _drawing_prompt(stored: StoredAnnotation, vision_description: Optional[str]) -> str:
    ann = stored.annotation
    lines: List[str] = []
    box = ann.bounding_box
    if box and ann.viewport and ann.viewport.width and ann.viewport.height:
        rel_x = box.x / ann.viewport.width * 100
        rel_y = box.y / ann.viewport.height * 100
        lines.append(f"**Drawing Location:** approximately {rel_x:.1f}% from left, {rel_y:.1f}% from top of viewport")
    elif box:
        lines.append(f"**Drawing Area:** {round(box.width)}x{round(box.height)}px")
    if ann.pathname:
        lines.append(f"**Page:** {ann.pathname}")
    if ann.extracted_text and ann.extracted_text.strip():
        lines.append(f"**Text found in drawing:**\n{ann.extracted_text.strip()}")
    if ann.nearby_elements:
        nearby = []
        for el in ann.nearby_elements[:5]:
            desc = f"- <{str(el.get('tagName', 'div')).lower()}>"
            if el.get("text"):
                desc += f': "{str(el["text"])[:50]}"'
            if el.get("selector"):
                desc += f" ({el['selector']})"
            nearby.append(desc)
        lines.append("**Nearby DOM Elements:**\n" + "\n".join(nearby))
    if ann.drawing_svg:
        lines.append(f"**Drawing SVG:**\n{ann.drawing_svg[:2000]}")
    if vision_description:
        lines.append(f"## Visual Analysis of Drawing\n{vision_description}")
    comment = stored.comment or ann.comment or "Create a component based on this drawing"
    return DRAWING_TO_CODE_PROMPT.format(comment=comment, context="\n".join(lines) or "(no extra context)")
