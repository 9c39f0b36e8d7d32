"""Agent CLI adapters.

Each provider knows how to build the argv for a one-shot, non-interactive,
auto-approving run of its CLI and how to turn one line of that CLI's
stream-json output into zero or more :class:`ProgressEvent` objects.
"""

from __future__ import annotations

import json
import shutil
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from skema_daemon.agents.models import ProgressEvent

_PASSTHROUGH_TYPES = {"init", "message", "tool_use", "tool_result", "error", "debug"}


class AgentProvider:
    """Base adapter. Subclasses override :meth:`build_command` and :meth:`parse_object`."""

    name = "base"
    executable: Optional[str] = None
    default_model: Optional[str] = None

    def build_command(self, prompt: str, model: Optional[str] = None) -> List[str]:
        raise NotImplementedError

    def is_available(self) -> bool:
        return self.executable is None or shutil.which(self.executable) is not None

    def parse_line(self, line: str) -> List[ProgressEvent]:
        line = line.strip()
        if not line:
            return []
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            return [ProgressEvent(type="message", role="assistant", content=line, provider=self.name)]
        if not isinstance(obj, dict):
            return [ProgressEvent(type="message", role="assistant", content=line, provider=self.name)]
        events = self.parse_object(obj)
        for event in events:
            event.provider = self.name
        return events

    def parse_object(self, obj: Dict[str, Any]) -> List[ProgressEvent]:
        return _passthrough(obj)

    @staticmethod
    def is_error_result(event: ProgressEvent) -> bool:
        return event.label == "result" and (event.status or "").lower() in {"error", "failure", "failed"}


class GeminiProvider(AgentProvider):
    name = "gemini"
    executable = "gemini"
    default_model = "gemini-2.5-flash"

    def build_command(self, prompt: str, model: Optional[str] = None) -> List[str]:
        return [
            self.executable, "-p", prompt,
            "--yolo",
            "--output-format", "stream-json",
            "-m", model or self.default_model,
        ]

    def parse_object(self, obj: Dict[str, Any]) -> List[ProgressEvent]:
        kind = obj.get("type")
        if kind == "init":
            return [ProgressEvent(type="init", content=f"Session {obj.get('session_id', '')}".strip(),
                                  label=obj.get("model"))]
        if kind == "message":
            return [ProgressEvent(type="message", role=_role(obj.get("role")), content=_text(obj.get("content")))]
        if kind == "tool_use":
            return [ProgressEvent(type="tool_use", tool_name=obj.get("tool_name"), tool_id=obj.get("tool_id"),
                                  parameters=obj.get("parameters") or {})]
        if kind == "tool_result":
            return [ProgressEvent(type="tool_result", tool_id=obj.get("tool_id"), status=obj.get("status"),
                                  content=_text(obj.get("output")))]
        if kind == "error":
            return [ProgressEvent(type="error", content=_text(obj.get("message") or obj.get("content")))]
        if kind in {"result", "done"}:
            return [ProgressEvent(type="message", role="assistant", label="result", status=obj.get("status"),
                                  content=_text(obj.get("response")))]
        return [ProgressEvent(type="debug", content=json.dumps(obj)[:500], label=str(kind))]


class ClaudeProvider(AgentProvider):
    name = "claude"
    executable = "claude"

    def build_command(self, prompt: str, model: Optional[str] = None) -> List[str]:
        argv = [
            self.executable, "-p", prompt,
            "--output-format", "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
        ]
        if model:
            argv += ["--model", model]
        return argv

    def parse_object(self, obj: Dict[str, Any]) -> List[ProgressEvent]:
        kind = obj.get("type")
        if kind == "system":
            return [ProgressEvent(type="init", content=f"Session {obj.get('session_id', '')}".strip(),
                                  label=obj.get("model"))]
        if kind in {"assistant", "user"}:
            return self._content_blocks(kind, (obj.get("message") or {}).get("content"))
        if kind == "result":
            is_error = bool(obj.get("is_error")) or obj.get("subtype") not in (None, "success")
            return [ProgressEvent(type="message", role="assistant", label="result",
                                  status="error" if is_error else "success", content=_text(obj.get("result")))]
        return [ProgressEvent(type="debug", content=json.dumps(obj)[:500], label=str(kind))]

    @staticmethod
    def _content_blocks(role: str, content: Any) -> List[ProgressEvent]:
        if isinstance(content, str):
            return [ProgressEvent(type="message", role=_role(role), content=content)]
        events: List[ProgressEvent] = []
        for block in content or []:
            block_type = block.get("type")
            if block_type == "text":
                events.append(ProgressEvent(type="message", role=_role(role), content=block.get("text", "")))
            elif block_type == "tool_use":
                events.append(ProgressEvent(type="tool_use", tool_name=block.get("name"), tool_id=block.get("id"),
                                            parameters=block.get("input") or {}))
            elif block_type == "tool_result":
                events.append(ProgressEvent(type="tool_result", tool_id=block.get("tool_use_id"),
                                            status="error" if block.get("is_error") else "success",
                                            content=_text(block.get("content"))))
        return events


class CommandProvider(AgentProvider):
    """Runs an arbitrary command with the prompt as its last argument.

    Output lines that are JSON objects with a known ``type`` are passed
    through as events; anything else is treated as assistant text.
    """

    name = "command"

    def __init__(self, argv: Sequence[str]):
        if not argv:
            raise ValueError("command provider requires a non-empty agent command")
        self.argv = list(argv)
        self.executable = self.argv[0]

    def build_command(self, prompt: str, model: Optional[str] = None) -> List[str]:
        return [*self.argv, prompt]


def get_provider(name: str, agent_command: Sequence[str] = ()) -> AgentProvider:
    if name == "gemini":
        return GeminiProvider()
    if name == "claude":
        return ClaudeProvider()
    if name == "command":
        return CommandProvider(agent_command)
    raise ValueError(f"Unknown agent provider: {name}")


def _passthrough(obj: Dict[str, Any]) -> List[ProgressEvent]:
    kind = obj.get("type")
    if kind in {"result", "done"}:
        return [ProgressEvent(type="message", role="assistant", label="result", status=obj.get("status"),
                              content=_text(obj.get("content") or obj.get("result")))]
    if kind not in _PASSTHROUGH_TYPES:
        return [ProgressEvent(type="message", role="assistant", content=json.dumps(obj))]
    data = {k: v for k, v in obj.items() if k in ProgressEvent.model_fields and k != "type"}
    if "content" in data:
        data["content"] = _text(data["content"])
    try:
        return [ProgressEvent(type=kind, **data)]
    except ValidationError:
        return [ProgressEvent(type=kind, content=data.get("content"))]


def _role(value: Any) -> Optional[str]:
    return value if value in ("user", "assistant") else "assistant"


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = [item.get("text", "") if isinstance(item, dict) else str(item) for item in value]
        return "".join(parts)
    return json.dumps(value)
