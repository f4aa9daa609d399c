"""Read-side queries backing the dashboard."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Callable, Optional, Union

from app.schemas import ReadingRecord
from datastore.telemetry_store import StoreError, TelemetryStore, build_default_store
from services.errors import ErrorCode, TelemetryError, db_error
from services.store_executor import StoreExecutor, build_default_store_executor

logger = logging.getLogger(__name__)

MAX_RANGE_ROWS = 5000
MAX_WINDOW_MINUTES = 60 * 24 * 365 * 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    candidate = value.strip()
    if not candidate:
        raise ValueError("Timestamp is empty.")

    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise ValueError("Invalid timestamp format") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class RelativeWindow:
    """Readings created within the last ``minutes`` minutes."""

    minutes: int


@dataclass(frozen=True)
class AbsoluteWindow:
    """Readings created between ``start`` and ``end``, both inclusive."""

    start: datetime
    end: Optional[datetime] = None


RangeSelector = Union[RelativeWindow, AbsoluteWindow]


def require_device_id(device_id: Optional[str]) -> str:
    if device_id is None or not device_id.strip():
        raise TelemetryError(ErrorCode.MISSING_PARAM, "device_id is required")
    return device_id


def selector_from_params(
    minutes: Optional[str],
    start: Optional[str],
    end: Optional[str],
) -> RangeSelector:
    """Build a selector from raw query parameters.

    Exactly one form must be given: ``minutes``, or ``from`` with an optional
    ``to``.
    """
    minutes = minutes.strip() if minutes is not None else None
    start = start.strip() if start is not None else None
    end = end.strip() if end is not None else None

    if not minutes and not start:
        if end:
            raise TelemetryError(ErrorCode.INVALID_PARAM, "to requires from")
        raise TelemetryError(ErrorCode.MISSING_PARAM, "Provide from/to OR minutes")
    if minutes and (start or end):
        raise TelemetryError(ErrorCode.INVALID_PARAM, "Provide from/to OR minutes, not both")

    if minutes:
        try:
            value = int(minutes)
        except ValueError as exc:
            raise TelemetryError(
                ErrorCode.INVALID_PARAM, "minutes must be a positive integer"
            ) from exc
        if value <= 0:
            raise TelemetryError(ErrorCode.INVALID_PARAM, "minutes must be a positive integer")
        if value > MAX_WINDOW_MINUTES:
            raise TelemetryError(
                ErrorCode.INVALID_PARAM, f"minutes must not exceed {MAX_WINDOW_MINUTES}"
            )
        return RelativeWindow(minutes=value)

    try:
        start_at = parse_timestamp(start)
        end_at = parse_timestamp(end) if end else None
    except ValueError as exc:
        raise TelemetryError(ErrorCode.INVALID_PARAM, "from/to must be ISO-8601 timestamps") from exc
    if end_at is not None and end_at < start_at:
        raise TelemetryError(ErrorCode.INVALID_PARAM, "to must not be earlier than from")
    return AbsoluteWindow(start=start_at, end=end_at)


class QueryService:
    """Serves the latest reading and reading ranges for a device."""

    def __init__(
        self,
        store: TelemetryStore,
        store_executor: StoreExecutor,
        clock: Callable[[], datetime] = _utcnow,
        max_rows: int = MAX_RANGE_ROWS,
    ) -> None:
        self.store = store
        self.store_executor = store_executor
        self.max_rows = max_rows
        self._clock = clock

    def latest(self, device_id: Optional[str]) -> ReadingRecord:
        device_id = require_device_id(device_id)
        try:
            record = self.store_executor.call(
                "latest_reading", self.store.latest_reading, device_id
            )
        except StoreError as exc:
            logger.error("Latest fetch failed: %s", exc, extra={"device_id": device_id})
            raise db_error() from exc
        if record is None:
            raise TelemetryError(ErrorCode.NOT_FOUND, "No data found")
        return record

    def range(self, device_id: Optional[str], selector: RangeSelector) -> list[ReadingRecord]:
        device_id = require_device_id(device_id)
        if isinstance(selector, RelativeWindow):
            cutoff = self._clock() - timedelta(minutes=selector.minutes)
            bounds = {"after": cutoff}
        else:
            bounds = {"start": selector.start, "end": selector.end}

        try:
            records = self.store_executor.call(
                "list_readings",
                self.store.list_readings,
                device_id,
                limit=self.max_rows,
                **bounds,
            )
        except StoreError as exc:
            logger.error("Range fetch failed: %s", exc, extra={"device_id": device_id})
            raise db_error() from exc

        logger.debug(
            "Range query served",
            extra={
                "device_id": device_id,
                "row_count": len(records),
                "minutes": getattr(selector, "minutes", None),
            },
        )
        return records


@lru_cache
def build_default_queries() -> QueryService:
    return QueryService(
        store=build_default_store(),
        store_executor=build_default_store_executor(),
    )
