from __future__ import annotations

import logging

from ..errors import TunnelError
from ..logging_utils import log_event
from ..ports import wait_for_port
from ..protocol import Command, TunnelPayload, make_event
from ..session import RunnerSession

_logger = logging.getLogger(__name__)

STOP_PORT_WAIT_RETRIES = 3


async def start_tunnel(session: RunnerSession, command: Command) -> None:
    payload: TunnelPayload = command.parsed_payload()
    project_id = command.project_id
    port = payload.port
    async with session.project_lock(project_id):
        verified = session.verified_ports.get(project_id)
        if verified != port:
            raise TunnelError(
                f"Port {port} is not a verified listening port for this project"
            )
        previous = session.tunnel_ports.get(project_id)
        if previous is not None and previous != port:
            await session.close_project_tunnel(project_id)

        if not await wait_for_port(port, logger=_logger):
            raise TunnelError(f"Port {port} is not ready or not accessible")

        url = await session.tunnels.create_tunnel(port)
        session.tunnel_ports[project_id] = port
    log_event(
        _logger,
        logging.INFO,
        "tunnel.opened",
        project_id=project_id,
        port=port,
        url=url,
    )
    await session.emit(
        make_event("tunnel-created", project_id, command.id, port=port, tunnelUrl=url)
    )


async def stop_tunnel(session: RunnerSession, command: Command) -> None:
    payload: TunnelPayload = command.parsed_payload()
    project_id = command.project_id
    port = payload.port
    reachable = False
    # an unverified port has no live server to wait for
    if session.verified_ports.get(project_id) == port:
        reachable = await wait_for_port(port, STOP_PORT_WAIT_RETRIES, logger=_logger)
    if not reachable:
        log_event(
            _logger,
            logging.INFO,
            "tunnel.port_unreachable",
            project_id=project_id,
            port=port,
        )
    async with session.project_lock(project_id):
        await session.tunnels.close_tunnel(port)
        if session.tunnel_ports.get(project_id) == port:
            session.tunnel_ports.pop(project_id, None)
    await session.emit(make_event("tunnel-closed", project_id, command.id, port=port))


__all__ = ["start_tunnel", "stop_tunnel"]
