from __future__ import annotations

from typing import Any, Dict, Iterable, List

import typer

_READING_FIELDS = (
    "id",
    "created_at",
    "status",
    "temp_c",
    "hum_pct",
    "temp_avg",
    "hum_avg",
    "health",
    "fail_pct",
    "rssi",
    "uptime_s",
    "fw",
)


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def _format(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


def render_reading(reading: Dict[str, Any]) -> None:
    echo_heading(f"Latest reading for {reading.get('device_id')}")
    echo_key_values((field, reading.get(field)) for field in _READING_FIELDS)


def render_range(device_id: str, readings: List[Dict[str, Any]]) -> None:
    echo_heading(f"{len(readings)} reading(s) for {device_id}")
    if not readings:
        typer.echo("No readings in window.")
        return
    for reading in readings:
        typer.echo(
            f"  {reading.get('created_at')}  "
            f"temp_c={_format(reading.get('temp_c'))}  "
            f"hum_pct={_format(reading.get('hum_pct'))}  "
            f"status={reading.get('status')}"
        )


def render_health(payload: Dict[str, Any]) -> None:
    echo_heading("Service Health")
    echo_key_values(
        [
            ("ok", payload.get("ok")),
            ("time", payload.get("time")),
            ("version", payload.get("version")),
        ]
    )
