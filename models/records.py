"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


KNOWN_STATUSES = frozenset({"OK", "WIFI_DOWN", "SENSOR_FAIL", "INIT"})


@dataclass(slots=True, frozen=True)
class NormalizedReading:
    """Canonical reading fields derived from a device payload."""

    device_ts_ms: Optional[int] = None
    fw: Optional[str] = None
    uptime_s: Optional[int] = None
    rssi: Optional[int] = None
    status: str = "OK"
    temp_c: Optional[float] = None
    hum_pct: Optional[float] = None
    temp_avg: Optional[float] = None
    hum_avg: Optional[float] = None
    fail_pct: Optional[float] = None
    health: Optional[float] = None

    @property
    def has_known_status(self) -> bool:
        return self.status in KNOWN_STATUSES

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)
