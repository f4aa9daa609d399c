"""Pydantic schemas for payload validation, stored rows and the HTTP API layer."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictFloat, StrictStr

from services.errors import ErrorCode


class SensorFields(BaseModel):
    """Nested ``sensor`` block some firmware revisions send."""

    model_config = ConfigDict(extra="allow", allow_inf_nan=False)

    temp_c: Optional[StrictFloat] = None
    hum_pct: Optional[StrictFloat] = None
    temp_avg: Optional[StrictFloat] = None
    hum_avg: Optional[StrictFloat] = None


class ReadingPayload(BaseModel):
    """Shape check for an inbound device payload.

    Only types and bounds are enforced here. Unknown fields are tolerated so
    newer firmware can add fields without being rejected; the original body is
    kept verbatim alongside the normalized reading.
    """

    model_config = ConfigDict(extra="allow", allow_inf_nan=False)

    device_id: StrictStr = Field(..., min_length=1)
    fw: Optional[StrictStr] = None
    ts_ms: Optional[StrictFloat] = None
    uptime_s: Optional[StrictFloat] = Field(default=None, ge=0)
    uptime_ms: Optional[StrictFloat] = Field(default=None, ge=0)
    rssi: Optional[StrictFloat] = None
    status: Optional[StrictStr] = None
    temp_c: Optional[StrictFloat] = None
    hum_pct: Optional[StrictFloat] = None
    temp_avg: Optional[StrictFloat] = None
    hum_avg: Optional[StrictFloat] = None
    fail_pct: Optional[StrictFloat] = Field(
        default=None, ge=0, le=100, description="Either a 0..1 fraction or a percentage."
    )
    health: Optional[StrictFloat] = Field(default=None, ge=0, le=100)
    sensor: Optional[SensorFields] = None


class ReadingData(BaseModel):
    """Reading fields exposed to dashboard readers."""

    id: int
    device_id: str
    created_at: datetime
    device_ts_ms: Optional[int] = None
    fw: Optional[str] = None
    uptime_s: Optional[int] = Field(default=None, ge=0)
    rssi: Optional[int] = None
    status: str = "OK"
    temp_c: Optional[float] = None
    hum_pct: Optional[float] = None
    temp_avg: Optional[float] = None
    hum_avg: Optional[float] = None
    fail_pct: Optional[float] = None
    health: Optional[float] = None


class ReadingRecord(ReadingData):
    """A persisted row of the append-only readings table."""

    raw_json: Optional[Dict[str, Any]] = None

    def public_view(self) -> ReadingData:
        return ReadingData.model_validate(self.model_dump(exclude={"raw_json"}))


class DeviceRecord(BaseModel):
    """A persisted row of the devices table."""

    device_id: str
    last_seen_at: datetime


class ErrorBody(BaseModel):
    code: ErrorCode
    message: str
    details: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Envelope for every failed request."""

    ok: Literal[False] = False
    error: ErrorBody


class IngestResponse(BaseModel):
    ok: Literal[True] = True
    inserted_id: int = Field(..., description="Identifier assigned to the stored reading.")


class LatestResponse(BaseModel):
    ok: Literal[True] = True
    data: ReadingData


class RangeResponse(BaseModel):
    ok: Literal[True] = True
    data: List[ReadingData] = Field(default_factory=list)


class HealthResponse(BaseModel):
    ok: bool = True
    time: datetime
    version: str


class DebugInfo(BaseModel):
    has_device_key: bool
    has_device_keys_json: bool
    has_store_path: bool
    environment: str
    api_version: str


class DebugResponse(BaseModel):
    ok: Literal[True] = True
    env: DebugInfo
