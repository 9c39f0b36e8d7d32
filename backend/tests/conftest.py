import shutil
import sys
from pathlib import Path

import pytest

from skema_daemon.config import DaemonConfig
from skema_daemon.core_models import Annotation

FAKE_AGENT = str(Path(__file__).with_name("fake_agent.py"))

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")

BUTTON_SOURCE = 'export const Button = () => <button className="btn">Get Started</button>;\n'


class DummyRedis:
    """In-memory imitation of the redis.asyncio calls used by the annotation backend."""

    def __init__(self):
        self.hashes: dict[str, dict[str, bytes]] = {}
        self.lists: dict[str, list[bytes]] = {}

    @staticmethod
    def _b(value) -> bytes:
        return value if isinstance(value, bytes) else str(value).encode()

    async def hset(self, key, field, value):
        table = self.hashes.setdefault(key, {})
        is_new = self._b(field) not in table
        table[self._b(field)] = self._b(value)
        return 1 if is_new else 0

    async def hmget(self, key, fields):
        table = self.hashes.get(key, {})
        return [table.get(self._b(f)) for f in fields]

    async def hdel(self, key, field):
        return 1 if self.hashes.get(key, {}).pop(self._b(field), None) is not None else 0

    async def rpush(self, key, value):
        self.lists.setdefault(key, []).append(self._b(value))

    async def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return list(items[start:] if end == -1 else items[start:end + 1])

    async def lrem(self, key, count, value):
        items = self.lists.get(key, [])
        value = self._b(value)
        self.lists[key] = [i for i in items if i != value]


def make_config(tmp_path, behaviour: str = "edit", **overrides) -> DaemonConfig:
    values = dict(
        cwd=str(tmp_path),
        provider="command",
        agent_command=(sys.executable, FAKE_AGENT, behaviour),
        mode="auto",
        agent_timeout_s=20.0,
        terminate_grace_s=1.0,
        watch_timeout_s=0.5,
        watch_max_timeout_s=2.0,
        cors_origins=("http://testserver",),
    )
    values.update(overrides)
    return DaemonConfig(**values)


def button_annotation(**overrides) -> Annotation:
    data = {
        "type": "dom_selection",
        "selector": ".btn",
        "tagName": "BUTTON",
        "elementPath": "main > button.btn",
        "text": "Get Started",
        "boundingBox": {"x": 10, "y": 20, "width": 120, "height": 40},
        "timestamp": 1700000000000,
        "pathname": "/",
        "comment": "Rename this button",
    }
    data.update(overrides)
    return Annotation.model_validate(data)


@pytest.fixture
def work_tree(tmp_path):
    """A small project directory the fake agent edits."""
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "Button.tsx").write_text(BUTTON_SOURCE, encoding="utf-8")
    (tmp_path / "src" / "App.tsx").write_text("export const App = () => null;\n", encoding="utf-8")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("module.exports = 1;\n", encoding="utf-8")
    return tmp_path
