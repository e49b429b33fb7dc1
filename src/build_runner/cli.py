import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer

from .config import ConfigError, RunnerConfig, load_config
from .logging_utils import configure_console_logging
from .runner import Runner, run_cleanup

app = typer.Typer(add_completion=False, help="Remote build runner for the control-plane broker.")


def _require_config(
    *,
    broker_url: Optional[str] = None,
    secret: Optional[str] = None,
    runner_id: Optional[str] = None,
    workspace: Optional[Path] = None,
    heartbeat_interval: Optional[float] = None,
    require_secret: bool = True,
) -> RunnerConfig:
    try:
        return load_config(
            broker_url=broker_url,
            shared_secret=secret,
            runner_id=runner_id,
            workspace=workspace,
            heartbeat_interval=heartbeat_interval,
            require_secret=require_secret,
        )
    except ConfigError as exc:
        raise typer.Exit(str(exc))


@app.command()
def run(
    broker_url: Optional[str] = typer.Option(
        None, "--broker-url", help="Broker websocket URL (RUNNER_BROKER_URL)"
    ),
    secret: Optional[str] = typer.Option(
        None, "--secret", help="Shared secret for broker and API (RUNNER_SHARED_SECRET)"
    ),
    runner_id: Optional[str] = typer.Option(
        None, "--runner-id", help="Runner identifier; defaults to the hostname"
    ),
    workspace: Optional[Path] = typer.Option(
        None, "--workspace", help="Root directory holding project checkouts"
    ),
    heartbeat_interval: Optional[float] = typer.Option(
        None, "--heartbeat-interval", help="Seconds between runner-status heartbeats"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Connect to the broker and execute commands until interrupted."""
    config = _require_config(
        broker_url=broker_url,
        secret=secret,
        runner_id=runner_id,
        workspace=workspace,
        heartbeat_interval=heartbeat_interval,
    )
    configure_console_logging(logging.DEBUG if verbose else logging.INFO, config.log)
    typer.echo(f"Runner {config.runner_id} connecting to {config.broker_url}")
    code = asyncio.run(Runner(config).run())
    if code:
        typer.echo("Gave up reconnecting to the broker", err=True)
        raise typer.Exit(code)


@app.command()
def cleanup(
    secret: Optional[str] = typer.Option(None, "--secret", help="Shared secret"),
    runner_id: Optional[str] = typer.Option(None, "--runner-id", help="Runner identifier"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", help="Workspace root"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Reconcile the control plane's process registry with this host once."""
    config = _require_config(secret=secret, runner_id=runner_id, workspace=workspace)
    configure_console_logging(logging.DEBUG if verbose else logging.WARNING)
    report = asyncio.run(run_cleanup(config))
    typer.echo(f"Checked: {report.checked}")
    typer.echo(f"Unregistered: {len(report.unregistered)}")
    typer.echo(f"Terminated: {len(report.terminated)}")
    for error in report.errors:
        typer.echo(f"- error: {error}", err=True)
    if report.errors:
        raise typer.Exit(1)


@app.command("config")
def show_config(
    workspace: Optional[Path] = typer.Option(None, "--workspace", help="Workspace root"),
    output_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
):
    """Print the resolved configuration with the secret redacted."""
    config = _require_config(workspace=workspace, require_secret=False)
    data = config.redacted()
    if output_json:
        typer.echo(json.dumps(data, indent=2, default=str))
        return
    for key, value in data.items():
        typer.echo(f"{key}: {value}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
