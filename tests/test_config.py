from pathlib import Path

import pytest
import yaml

from build_runner.config import (
    AGENT_CODEX,
    CONFIG_FILENAME,
    ConfigError,
    load_config,
)


def _write_yaml(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


def test_defaults_apply_without_file_or_env(tmp_path: Path) -> None:
    config = load_config(workspace=tmp_path, shared_secret="s", env={})
    assert config.broker_url == "ws://localhost:4000/socket"
    assert config.heartbeat_interval_seconds == 15.0
    assert config.ping_interval_seconds == 30.0
    assert config.liveness_deadline_seconds == 45.0
    assert config.reconnect_base_delay_seconds == 1.0
    assert config.reconnect_max_delay_seconds == 30.0
    assert config.max_reconnect_attempts == 10
    assert config.workspace_root == tmp_path.resolve()
    assert config.runner_id


def test_explicit_option_beats_env_and_file(tmp_path: Path) -> None:
    _write_yaml(tmp_path / CONFIG_FILENAME, {"broker": {"url": "ws://file/socket"}})
    env = {"RUNNER_BROKER_URL": "ws://env/socket", "RUNNER_SHARED_SECRET": "s"}

    config = load_config(workspace=tmp_path, broker_url="ws://cli/socket", env=env)
    assert config.broker_url == "ws://cli/socket"

    config = load_config(workspace=tmp_path, env=env)
    assert config.broker_url == "ws://env/socket"

    config = load_config(workspace=tmp_path, env={"RUNNER_SHARED_SECRET": "s"})
    assert config.broker_url == "ws://file/socket"


def test_env_values_are_converted(tmp_path: Path) -> None:
    env = {
        "RUNNER_SHARED_SECRET": "s",
        "RUNNER_HEARTBEAT_INTERVAL": "5",
        "RUNNER_ID": "runner-a",
        "API_BASE_URL": "https://api.example.com/",
        "RUNNER_DEFAULT_AGENT": AGENT_CODEX,
    }
    config = load_config(workspace=tmp_path, env=env)
    assert config.heartbeat_interval_seconds == 5.0
    assert config.runner_id == "runner-a"
    assert config.api_base_url == "https://api.example.com"
    assert config.default_agent == AGENT_CODEX


def test_missing_secret_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(workspace=tmp_path, env={})
    config = load_config(workspace=tmp_path, env={}, require_secret=False)
    assert config.shared_secret == ""


def test_invalid_values_raise_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(
            workspace=tmp_path,
            env={"RUNNER_SHARED_SECRET": "s", "RUNNER_HEARTBEAT_INTERVAL": "soon"},
        )
    with pytest.raises(ConfigError):
        load_config(workspace=tmp_path, shared_secret="s", heartbeat_interval=0, env={})
    with pytest.raises(ConfigError):
        load_config(workspace=tmp_path, shared_secret="s", default_agent="gpt", env={})


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    path = tmp_path / CONFIG_FILENAME
    path.parent.mkdir(parents=True)
    path.write_text("broker: [unterminated", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(workspace=tmp_path, shared_secret="s", env={})


def test_redacted_hides_secret(tmp_path: Path) -> None:
    config = load_config(workspace=tmp_path, shared_secret="hunter2", env={})
    data = config.redacted()
    assert data["shared_secret"] == "***"
    assert "hunter2" not in str(data)
    assert "raw" not in data
