from typing import Optional


class RunnerError(Exception):
    """Base class for errors raised while handling broker commands."""


class ConfigError(RunnerError):
    """Raised when configuration is invalid."""


class CommandDecodeError(RunnerError):
    """Raised when an inbound broker message cannot be decoded into a command."""


class PathEscapeError(RunnerError):
    """Raised when a resolved file path falls outside the project root."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class DevServerNotFoundError(RunnerError):
    pass


class TunnelError(RunnerError):
    pass


class ControlPlaneError(RunnerError):
    """Raised when a control-plane HTTP call fails after all retries."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BuildFailedError(RunnerError):
    """Raised when an agent backend reports an error during a build."""


__all__ = [
    "BuildFailedError",
    "CommandDecodeError",
    "ConfigError",
    "ControlPlaneError",
    "DevServerNotFoundError",
    "PathEscapeError",
    "RunnerError",
    "TunnelError",
]
