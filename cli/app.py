from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_health, render_range, render_reading


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for sending and reading telemetry from the ingest service.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        typer.secho("CLI state is uninitialized.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    return state


def _load_payload(path: Path) -> Dict[str, Any]:
    try:
        payload = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"{path} is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise typer.BadParameter(f"{path} must contain a JSON object.")
    return payload


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Service base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="HTTP timeout in seconds.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(base_url=base_url, timeout=timeout)
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("send")
def send_command(
    ctx: typer.Context,
    device_id: str = typer.Argument(..., help="Identifier of the sending device."),
    temp: Optional[float] = typer.Option(None, "--temp", help="Temperature in Celsius."),
    hum: Optional[float] = typer.Option(None, "--hum", help="Relative humidity in percent."),
    status: Optional[str] = typer.Option(None, "--status", help="Device status, e.g. OK or WIFI_DOWN."),
    health: Optional[float] = typer.Option(None, "--health", help="Health score 0-100."),
    fail_pct: Optional[float] = typer.Option(None, "--fail-pct", help="Failure rate as fraction or percent."),
    fw: Optional[str] = typer.Option(None, "--fw", help="Firmware version string."),
    payload_file: Optional[Path] = typer.Option(
        None,
        "--payload",
        exists=True,
        dir_okay=False,
        readable=True,
        help="JSON file with extra payload fields; explicit options win.",
    ),
    key: Optional[str] = typer.Option(None, "--key", "-k", help="Device key (defaults to DEVICE_KEY env)."),
) -> None:
    """Send one reading as the given device."""
    state = _get_state(ctx)
    payload: Dict[str, Any] = _load_payload(payload_file) if payload_file else {}
    payload["device_id"] = device_id
    payload.setdefault("ts_ms", int(time.time() * 1000))
    options = {
        "temp_c": temp,
        "hum_pct": hum,
        "status": status,
        "health": health,
        "fail_pct": fail_pct,
        "fw": fw,
    }
    payload.update({name: value for name, value in options.items() if value is not None})

    if not (key or state.config.device_key):
        typer.secho("No device key given; the service will reject the reading.", fg=typer.colors.YELLOW, err=True)

    inserted_id = state.client.send_reading(payload, device_key=key)
    typer.secho(f"Reading stored. inserted_id={inserted_id}", fg=typer.colors.GREEN)


@app.command("latest")
def latest_command(
    ctx: typer.Context,
    device_id: str = typer.Argument(..., help="Device to look up."),
) -> None:
    """Show the most recent reading of a device."""
    state = _get_state(ctx)
    payload = state.client.get_latest(device_id)
    render_reading(payload.get("data") or {})


@app.command("range")
def range_command(
    ctx: typer.Context,
    device_id: str = typer.Argument(..., help="Device to look up."),
    minutes: Optional[int] = typer.Option(None, "--minutes", "-m", min=1, help="Relative window in minutes."),
    start: Optional[str] = typer.Option(None, "--from", help="ISO-8601 lower bound."),
    end: Optional[str] = typer.Option(None, "--to", help="ISO-8601 upper bound."),
) -> None:
    """List readings of a device over a window, oldest first."""
    state = _get_state(ctx)
    if minutes is None and start is None:
        raise typer.BadParameter("Provide --minutes or --from.")
    payload = state.client.get_range(device_id, minutes=minutes, start=start, end=end)
    render_range(device_id, payload.get("data") or [])


@app.command("health")
def health_command(ctx: typer.Context) -> None:
    """Check that the service is up."""
    state = _get_state(ctx)
    render_health(state.client.get_health())
