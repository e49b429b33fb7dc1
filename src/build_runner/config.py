import dataclasses
import json
import os
import socket
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

CONFIG_FILENAME = ".build-runner/config.yml"
CONFIG_VERSION = 1

AGENT_CLAUDE = "claude-code"
AGENT_CODEX = "openai-codex"
KNOWN_AGENTS = (AGENT_CLAUDE, AGENT_CODEX)

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": CONFIG_VERSION,
    "broker": {
        "url": "ws://localhost:4000/socket",
        "shared_secret": None,
        "handshake_timeout_seconds": 10.0,
        "ping_interval_seconds": 30.0,
        "reconnect": {
            "base_delay_seconds": 1.0,
            "max_delay_seconds": 30.0,
            "max_attempts": 10,
        },
    },
    "runner": {
        "id": None,
        "workspace": "~/build-runner-workspace",
        "heartbeat_interval_seconds": 15.0,
        "health_check_interval_seconds": 30.0,
    },
    "api": {
        "base_url": "http://localhost:3000",
        "timeout_seconds": 15.0,
    },
    "agents": {
        "default": AGENT_CLAUDE,
        "claude": {
            "binary": "claude",
            "model": "claude-sonnet-4-5",
            "max_turns": 100,
        },
        "codex": {
            "binary": "codex",
            "model": "gpt-5-codex",
            "max_turns": 20,
        },
    },
    "log": {
        "path": ".build-runner/runner.log",
        "max_bytes": 10_000_000,
        "backup_count": 3,
    },
}

# option name -> (environment variable, converter)
ENV_OVERRIDES: Dict[str, tuple] = {
    "broker_url": ("RUNNER_BROKER_URL", str),
    "shared_secret": ("RUNNER_SHARED_SECRET", str),
    "runner_id": ("RUNNER_ID", str),
    "workspace": ("WORKSPACE_ROOT", str),
    "heartbeat_interval": ("RUNNER_HEARTBEAT_INTERVAL", float),
    "api_base_url": ("API_BASE_URL", str),
    "default_agent": ("RUNNER_DEFAULT_AGENT", str),
}


@dataclasses.dataclass
class LogConfig:
    path: Path
    max_bytes: int
    backup_count: int


@dataclasses.dataclass
class RunnerConfig:
    raw: Dict[str, Any]
    broker_url: str
    shared_secret: str
    runner_id: str
    workspace_root: Path
    heartbeat_interval_seconds: float
    handshake_timeout_seconds: float
    ping_interval_seconds: float
    reconnect_base_delay_seconds: float
    reconnect_max_delay_seconds: float
    max_reconnect_attempts: int
    health_check_interval_seconds: float
    api_base_url: str
    api_timeout_seconds: float
    default_agent: str
    claude_binary: str
    claude_model: str
    claude_max_turns: int
    codex_binary: str
    codex_model: str
    codex_max_turns: int
    log: LogConfig

    @property
    def liveness_deadline_seconds(self) -> float:
        return self.ping_interval_seconds * 1.5

    def redacted(self) -> Dict[str, Any]:
        data = {
            field.name: getattr(self, field.name)
            for field in dataclasses.fields(self)
            if field.name != "raw"
        }
        data["shared_secret"] = "***" if self.shared_secret else None
        data["workspace_root"] = str(self.workspace_root)
        data["log"] = {
            "path": str(self.log.path),
            "max_bytes": self.log.max_bytes,
            "backup_count": self.log.backup_count,
        }
        return data


def _merge_defaults(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = json.loads(json.dumps(base))
    for key, value in overrides.items():
        if isinstance(value, dict) and key in merged and isinstance(merged[key], dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_dotenv_for_workspace(workspace: Path) -> None:
    """Best-effort load of ``.env`` files; never overrides exported variables."""
    for candidate in (workspace / ".env", workspace / ".build-runner" / ".env"):
        try:
            if candidate.exists():
                load_dotenv(dotenv_path=candidate, override=False)
        except OSError:
            continue


def load_config_data(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        return {}
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    return data


def _resolve(
    name: str,
    explicit: Mapping[str, Any],
    env: Mapping[str, str],
    file_value: Any,
) -> Any:
    value = explicit.get(name)
    if value is not None:
        return value
    env_name, convert = ENV_OVERRIDES[name]
    raw = env.get(env_name)
    if raw is not None and raw.strip() != "":
        try:
            return convert(raw.strip())
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {env_name}: {raw!r}") from exc
    return file_value


def _positive(value: Any, label: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{label} must be a number") from exc
    if number <= 0:
        raise ConfigError(f"{label} must be > 0")
    return number


def load_config(
    *,
    broker_url: Optional[str] = None,
    shared_secret: Optional[str] = None,
    runner_id: Optional[str] = None,
    workspace: Optional[Path] = None,
    heartbeat_interval: Optional[float] = None,
    api_base_url: Optional[str] = None,
    default_agent: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    require_secret: bool = True,
) -> RunnerConfig:
    """
    Resolve the runner configuration.

    Each setting is taken from the explicit option when given, else from its
    environment variable, else from ``.build-runner/config.yml`` inside the
    workspace, else from the built-in default.
    """
    explicit = {
        "broker_url": broker_url,
        "shared_secret": shared_secret,
        "runner_id": runner_id,
        "workspace": str(workspace) if workspace is not None else None,
        "heartbeat_interval": heartbeat_interval,
        "api_base_url": api_base_url,
        "default_agent": default_agent,
    }
    if env is None:
        pre_workspace = _resolve(
            "workspace", explicit, os.environ, DEFAULT_CONFIG["runner"]["workspace"]
        )
        _load_dotenv_for_workspace(Path(str(pre_workspace)).expanduser())
        env = os.environ

    workspace_value = _resolve(
        "workspace", explicit, env, DEFAULT_CONFIG["runner"]["workspace"]
    )
    workspace_root = Path(str(workspace_value)).expanduser().resolve()
    cfg = _merge_defaults(
        DEFAULT_CONFIG, load_config_data(workspace_root / CONFIG_FILENAME)
    )

    broker = cfg["broker"]
    reconnect = broker["reconnect"]
    runner = cfg["runner"]
    agents = cfg["agents"]

    secret = _resolve("shared_secret", explicit, env, broker.get("shared_secret"))
    if require_secret and not secret:
        raise ConfigError("RUNNER_SHARED_SECRET is required")

    agent = _resolve("default_agent", explicit, env, agents.get("default"))
    if agent not in KNOWN_AGENTS:
        raise ConfigError(
            f"Unknown agent '{agent}'; expected one of {', '.join(KNOWN_AGENTS)}"
        )

    max_attempts = reconnect.get("max_attempts")
    if not isinstance(max_attempts, int) or max_attempts < 1:
        raise ConfigError("broker.reconnect.max_attempts must be a positive integer")

    log_cfg = cfg["log"]
    log_path = Path(log_cfg["path"]).expanduser()
    if not log_path.is_absolute():
        log_path = workspace_root / log_path

    return RunnerConfig(
        raw=cfg,
        broker_url=str(_resolve("broker_url", explicit, env, broker["url"])),
        shared_secret=str(secret or ""),
        runner_id=str(
            _resolve("runner_id", explicit, env, runner.get("id"))
            or socket.gethostname()
        ),
        workspace_root=workspace_root,
        heartbeat_interval_seconds=_positive(
            _resolve(
                "heartbeat_interval",
                explicit,
                env,
                runner["heartbeat_interval_seconds"],
            ),
            "heartbeat interval",
        ),
        handshake_timeout_seconds=_positive(
            broker["handshake_timeout_seconds"], "broker.handshake_timeout_seconds"
        ),
        ping_interval_seconds=_positive(
            broker["ping_interval_seconds"], "broker.ping_interval_seconds"
        ),
        reconnect_base_delay_seconds=_positive(
            reconnect["base_delay_seconds"], "broker.reconnect.base_delay_seconds"
        ),
        reconnect_max_delay_seconds=_positive(
            reconnect["max_delay_seconds"], "broker.reconnect.max_delay_seconds"
        ),
        max_reconnect_attempts=max_attempts,
        health_check_interval_seconds=_positive(
            runner["health_check_interval_seconds"],
            "runner.health_check_interval_seconds",
        ),
        api_base_url=str(
            _resolve("api_base_url", explicit, env, cfg["api"]["base_url"])
        ).rstrip("/"),
        api_timeout_seconds=_positive(
            cfg["api"]["timeout_seconds"], "api.timeout_seconds"
        ),
        default_agent=agent,
        claude_binary=str(agents["claude"]["binary"]),
        claude_model=str(agents["claude"]["model"]),
        claude_max_turns=int(agents["claude"]["max_turns"]),
        codex_binary=str(agents["codex"]["binary"]),
        codex_model=str(agents["codex"]["model"]),
        codex_max_turns=int(agents["codex"]["max_turns"]),
        log=LogConfig(
            path=log_path,
            max_bytes=int(log_cfg["max_bytes"]),
            backup_count=int(log_cfg["backup_count"]),
        ),
    )


__all__ = [
    "AGENT_CLAUDE",
    "AGENT_CODEX",
    "CONFIG_FILENAME",
    "ConfigError",
    "DEFAULT_CONFIG",
    "LogConfig",
    "RunnerConfig",
    "load_config",
]
