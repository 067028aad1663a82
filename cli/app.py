from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_alerts, render_stats
from models.records import format_timestamp, parse_timestamp


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for interacting with the telemetry rule engine service.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        typer.secho("CLI state is uninitialized.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Rule engine API base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Seconds to wait for each HTTP request.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(base_url=base_url, request_timeout=timeout)
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("send")
def send_command(
    ctx: typer.Context,
    device_id: int = typer.Argument(..., min=1, help="Device identifier."),
    pressure: float = typer.Argument(..., min=0.0, help="Pressure in MPa."),
    temperature: float = typer.Argument(..., min=0.0, help="Temperature in degrees Celsius."),
    timestamp: Optional[str] = typer.Option(
        None,
        "--timestamp",
        "-t",
        help="RFC-3339 timestamp with offset (defaults to now, UTC).",
    ),
) -> None:
    """Submit one reading to the ingestion endpoint."""
    state = _get_state(ctx)
    if timestamp is None:
        moment = datetime.now(timezone.utc)
    else:
        try:
            moment = parse_timestamp(timestamp)
        except ValueError as exc:
            raise typer.BadParameter(str(exc), param_hint="--timestamp") from exc

    reading = {
        "device_id": device_id,
        "timestamp": format_timestamp(moment),
        "pressure": pressure,
        "temperature": temperature,
    }
    state.client.send_reading(reading)
    typer.secho(
        f"Reading accepted. device_id={device_id} timestamp={reading['timestamp']}",
        fg=typer.colors.GREEN,
    )


@app.command("alerts")
def alerts_command(
    ctx: typer.Context,
    device_id: Optional[int] = typer.Option(None, "--device-id", "-d", min=1, help="Only this device."),
    limit: int = typer.Option(20, "--limit", "-n", min=1, max=1000, help="Maximum alerts to show."),
) -> None:
    """List the most recent alerts."""
    state = _get_state(ctx)
    alerts = state.client.list_alerts(device_id=device_id, limit=limit)
    render_alerts(alerts)


@app.command("stats")
def stats_command(ctx: typer.Context) -> None:
    """Show consumer state and counters."""
    state = _get_state(ctx)
    render_stats(state.client.get_stats())


if __name__ == "__main__":
    app()
