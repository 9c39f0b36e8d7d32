"""Process-wide daemon configuration, fixed at startup."""

from __future__ import annotations

import os
import shlex
from typing import Any, Literal, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

ProviderName = Literal["gemini", "claude", "command"]
DaemonMode = Literal["auto", "queue"]

DEFAULT_PORT = 9999
DEFAULT_WATCH_MAX_TIMEOUT = 300.0


class DaemonConfig(BaseModel):
    """Immutable configuration passed to every component.

    Build it once (``load_config`` / CLI) and never mutate it; changing mode or
    provider requires a daemon restart.
    """
    model_config = ConfigDict(frozen=True)

    port: int = Field(DEFAULT_PORT, ge=1, le=65535)
    host: str = "127.0.0.1"
    cwd: str = Field(default_factory=os.getcwd, description="Project working tree the agent edits.")
    provider: ProviderName = "gemini"
    mode: DaemonMode = "auto"
    model: Optional[str] = Field(None, description="Provider-specific model override.")
    agent_command: Tuple[str, ...] = Field(
        default_factory=tuple,
        description="Command line for the 'command' provider; the prompt is appended as last argument.",
    )
    agent_timeout_s: float = Field(300.0, gt=0)
    terminate_grace_s: float = Field(5.0, ge=0)
    watch_timeout_s: float = Field(30.0, gt=0)
    watch_max_timeout_s: float = Field(DEFAULT_WATCH_MAX_TIMEOUT, gt=0)
    max_prompt_chars: int = Field(8000, ge=256)
    fast_mode: bool = True
    rollback_on_failure: bool = True
    snapshot_dir: str = ".skema"
    redis_url: Optional[str] = None
    vision_model: Optional[str] = None
    cors_origins: Tuple[str, ...] = ("http://localhost:3000",)
    log_level: str = "INFO"

    @field_validator("cwd")
    @classmethod
    def _absolute_cwd(cls, value: str) -> str:
        return os.path.abspath(os.path.expanduser(value))

    def clamp_watch_timeout(self, requested: Optional[float]) -> float:
        """Return the long-poll ceiling to use for a watch request."""
        if requested is None or requested <= 0:
            return self.watch_timeout_s
        return min(requested, self.watch_max_timeout_s)


_ENV_FIELDS = {
    "SKEMA_PORT": "port",
    "SKEMA_HOST": "host",
    "SKEMA_CWD": "cwd",
    "SKEMA_PROVIDER": "provider",
    "SKEMA_MODE": "mode",
    "SKEMA_MODEL": "model",
    "SKEMA_AGENT_TIMEOUT": "agent_timeout_s",
    "SKEMA_TERMINATE_GRACE": "terminate_grace_s",
    "SKEMA_WATCH_TIMEOUT": "watch_timeout_s",
    "SKEMA_WATCH_MAX_TIMEOUT": "watch_max_timeout_s",
    "SKEMA_REDIS_URL": "redis_url",
    "SKEMA_VISION_MODEL": "vision_model",
    "SKEMA_LOG_LEVEL": "log_level",
}


def load_config(**overrides: Any) -> DaemonConfig:
    """Build the config from ``.env`` / ``SKEMA_*`` variables, then explicit overrides.

    Overrides whose value is ``None`` are ignored so CLI flags that were not
    given fall through to the environment.
    """
    load_dotenv()
    values: dict[str, Any] = {}
    for env_name, field_name in _ENV_FIELDS.items():
        raw = os.environ.get(env_name)
        if raw:
            values[field_name] = raw
    agent_cmd = os.environ.get("SKEMA_AGENT_COMMAND")
    if agent_cmd:
        values["agent_command"] = tuple(shlex.split(agent_cmd))
    values.update({k: v for k, v in overrides.items() if v is not None})
    return DaemonConfig.model_validate(values)
