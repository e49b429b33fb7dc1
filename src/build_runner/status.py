import os
import platform
import socket
from typing import Any, Dict, Optional

from . import __version__
from .protocol import make_event
from .session import RunnerSession


def _load_average() -> Optional[float]:
    try:
        return round(os.getloadavg()[0], 2)
    except (AttributeError, OSError):
        return None


def runner_status_payload(session: RunnerSession) -> Dict[str, Any]:
    return {
        "status": "online",
        "version": __version__,
        "hostname": socket.gethostname(),
        "platform": platform.system().lower(),
        "uptimeSeconds": session.uptime_seconds(),
        "load": _load_average(),
        "runnerId": session.config.runner_id,
        "devServers": len(session.dev_servers),
    }


async def publish_status(
    session: RunnerSession,
    project_id: Optional[str] = None,
    command_id: Optional[str] = None,
) -> None:
    await session.emit(
        make_event(
            "runner-status",
            project_id,
            command_id,
            payload=runner_status_payload(session),
        )
    )


__all__ = ["publish_status", "runner_status_payload"]
