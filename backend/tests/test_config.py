import os

import pytest
from pydantic import ValidationError

from skema_daemon.config import DEFAULT_PORT, DaemonConfig, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("SKEMA_"):
            monkeypatch.delenv(name, raising=False)


def test_defaults(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    config = load_config()
    assert config.port == DEFAULT_PORT
    assert config.mode == "auto"
    assert config.provider == "gemini"
    assert config.cwd == os.getcwd()
    assert config.agent_timeout_s == 300.0


def test_environment_then_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("SKEMA_PORT", "8123")
    monkeypatch.setenv("SKEMA_MODE", "queue")
    monkeypatch.setenv("SKEMA_PROVIDER", "claude")
    monkeypatch.setenv("SKEMA_CWD", str(tmp_path))

    config = load_config(provider="gemini", model=None)
    assert config.port == 8123
    assert config.mode == "queue"
    assert config.provider == "gemini"  # explicit override wins
    assert config.model is None
    assert config.cwd == str(tmp_path)


def test_agent_command_is_split_like_a_shell(monkeypatch):
    monkeypatch.setenv("SKEMA_AGENT_COMMAND", "my-agent --flag 'two words'")
    config = load_config(provider="command")
    assert config.agent_command == ("my-agent", "--flag", "two words")


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        DaemonConfig(mode="sometimes")
    with pytest.raises(ValidationError):
        DaemonConfig(agent_timeout_s=0)
    with pytest.raises(ValidationError):
        DaemonConfig(port=70000)


def test_config_is_immutable():
    config = DaemonConfig()
    with pytest.raises(ValidationError):
        config.mode = "queue"


def test_clamp_watch_timeout():
    config = DaemonConfig(watch_timeout_s=30, watch_max_timeout_s=120)
    assert config.clamp_watch_timeout(None) == 30
    assert config.clamp_watch_timeout(0) == 30
    assert config.clamp_watch_timeout(5) == 5
    assert config.clamp_watch_timeout(3600) == 120
