from __future__ import annotations

from typing import Any, Dict, Iterable, List

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def _alert_detail(alert: Dict[str, Any]) -> str:
    if alert.get("type") == "sustained":
        return f"change={alert.get('change')}"
    return f"pressure={alert.get('pressure')} temperature={alert.get('temperature')}"


def render_alerts(alerts: List[Dict[str, Any]]) -> None:
    echo_heading("Alerts")
    if not alerts:
        typer.echo("No alerts recorded.")
        return
    for alert in alerts:
        color = typer.colors.RED if alert.get("type") == "instant" else typer.colors.YELLOW
        typer.secho(
            f"  - [{alert.get('type')}] device {alert.get('device_id')} "
            f"at {alert.get('timestamp')}: {alert.get('reason')} ({_alert_detail(alert)})",
            fg=color,
        )


def render_stats(payload: Dict[str, Any]) -> None:
    echo_heading("Rule Engine")
    echo_key_values(
        [
            ("state", payload.get("state")),
            ("ack_policy", payload.get("ack_policy")),
            ("window_size", payload.get("window_size")),
            ("cached_devices", payload.get("cached_devices")),
        ]
    )
    counters = payload.get("counters") or {}
    typer.echo()
    echo_heading("Counters")
    if counters:
        echo_key_values(sorted(counters.items()))
    else:
        typer.echo("No counters available.")
