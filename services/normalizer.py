"""Maps heterogeneous device payloads onto the canonical reading shape."""

from __future__ import annotations

import math
from typing import Any, Mapping, Optional

from models.records import NormalizedReading

SENSOR_FIELDS = ("temp_c", "hum_pct", "temp_avg", "hum_avg")


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    result = float(value)
    if not math.isfinite(result):
        return None
    return result


def _as_int(value: Any) -> Optional[int]:
    number = _as_float(value)
    if number is None:
        return None
    return int(number)


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def _sensor_value(payload: Mapping[str, Any], name: str) -> Optional[float]:
    # Nested ``sensor.<name>`` wins; the top-level field is the fallback.
    nested = payload.get("sensor")
    if isinstance(nested, Mapping):
        value = _as_float(nested.get(name))
        if value is not None:
            return value
    return _as_float(payload.get(name))


def _uptime_seconds(payload: Mapping[str, Any]) -> Optional[int]:
    uptime_s = _as_float(payload.get("uptime_s"))
    if uptime_s is not None and uptime_s >= 0:
        return math.floor(uptime_s)
    uptime_ms = _as_float(payload.get("uptime_ms"))
    if uptime_ms is not None and uptime_ms >= 0:
        return math.floor(uptime_ms) // 1000
    return None


def normalize_fail_pct(value: Any) -> Optional[float]:
    """Rescale fractions in ``(0, 1]`` to percentages; pass others through."""
    fail_pct = _as_float(value)
    if fail_pct is None:
        return None
    if 0 < fail_pct <= 1:
        return fail_pct * 100
    return fail_pct


def normalize(payload: Any) -> NormalizedReading:
    """Derive canonical fields from a raw payload. Never raises."""
    if not isinstance(payload, Mapping):
        return NormalizedReading()

    sensors = {name: _sensor_value(payload, name) for name in SENSOR_FIELDS}
    return NormalizedReading(
        device_ts_ms=_as_int(payload.get("ts_ms")),
        fw=_as_str(payload.get("fw")),
        uptime_s=_uptime_seconds(payload),
        rssi=_as_int(payload.get("rssi")),
        status=_as_str(payload.get("status")) or "OK",
        fail_pct=normalize_fail_pct(payload.get("fail_pct")),
        health=_as_float(payload.get("health")),
        **sensors,
    )
