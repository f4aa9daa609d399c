from __future__ import annotations
import json
import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from app.schemas import DeviceRecord, ReadingRecord
from settings import get_settings

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StoreError(RuntimeError):
    """Raised when the store cannot complete an operation."""


class StoreTimeoutError(StoreError):
    """Raised when a store call exceeds its request-scoped timeout."""


class TelemetryStore:
    """In-process relational store holding the ``devices`` and ``readings`` tables.

    Readings are append-only; ``created_at`` is assigned here and is strictly
    increasing in insertion order across all devices. Devices are keyed on
    ``device_id`` and only ever upserted.

    With a ``persistence_path`` the devices table is snapshotted to that file
    and each reading is appended as one line to a JSON-lines log next to it,
    so a write costs the same however many readings are stored. Rows reach
    memory only after they reached disk.
    """

    def __init__(
        self,
        persistence_path: Optional[Path] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.persistence_path = persistence_path
        self._clock = clock
        self._devices: Dict[str, DeviceRecord] = {}
        self._readings: List[ReadingRecord] = []
        self._next_id = 1
        self._last_created_at: Optional[datetime] = None
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_from_disk()

    def insert_reading(self, device_id: str, **fields: Any) -> ReadingRecord:
        if not device_id:
            raise StoreError("readings.device_id must be a non-empty string")
        with self._lock:
            created_at = self._next_created_at()
            try:
                record = ReadingRecord(
                    id=self._next_id,
                    device_id=device_id,
                    created_at=created_at,
                    **fields,
                )
            except ValidationError as exc:
                raise StoreError(f"rejected reading row: {exc.error_count()} invalid column(s)") from exc
            self._append_reading(record)
            self._readings.append(record)
            self._next_id += 1
            self._last_created_at = created_at
            return record.model_copy(deep=True)

    def upsert_device(self, device_id: str, seen_at: datetime) -> DeviceRecord:
        if not device_id:
            raise StoreError("devices.device_id must be a non-empty string")
        with self._lock:
            record = DeviceRecord(device_id=device_id, last_seen_at=seen_at)
            devices = dict(self._devices)
            devices[device_id] = record
            self._write_devices(devices)
            self._devices = devices
            return record.model_copy(deep=True)

    @property
    def readings_log_path(self) -> Optional[Path]:
        if not self.persistence_path:
            return None
        return self.persistence_path.with_name(f"{self.persistence_path.stem}.readings.jsonl")

    def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        with self._lock:
            record = self._devices.get(device_id)
            if record is None:
                return None
            return record.model_copy(deep=True)

    def list_devices(self) -> list[DeviceRecord]:
        with self._lock:
            return [record.model_copy(deep=True) for record in self._devices.values()]

    def latest_reading(self, device_id: str) -> Optional[ReadingRecord]:
        with self._lock:
            for record in reversed(self._readings):
                if record.device_id == device_id:
                    return record.model_copy(deep=True)
        return None

    def list_readings(
        self,
        device_id: str,
        *,
        after: Optional[datetime] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[ReadingRecord]:
        """Return readings for a device in ascending ``created_at`` order.

        ``after`` is an exclusive lower bound, ``start`` and ``end`` are
        inclusive. With ``limit`` only the oldest matching rows are returned.
        """

        matches: list[ReadingRecord] = []
        with self._lock:
            for record in self._readings:
                if record.device_id != device_id:
                    continue
                if after is not None and record.created_at <= after:
                    continue
                if start is not None and record.created_at < start:
                    continue
                if end is not None and record.created_at > end:
                    break
                matches.append(record.model_copy(deep=True))
                if limit is not None and len(matches) >= limit:
                    break
        return matches

    def count_readings(self) -> int:
        with self._lock:
            return len(self._readings)

    def _next_created_at(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + _TICK
        return now

    def _append_reading(self, record: ReadingRecord) -> None:
        log_path = self.readings_log_path
        if log_path is None:
            return
        line = json.dumps(record.model_dump(mode="json"), sort_keys=True)
        try:
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            raise StoreError(f"could not append to {log_path}") from exc

    def _write_devices(self, devices: Dict[str, DeviceRecord]) -> None:
        if not self.persistence_path:
            return
        payload = {
            "devices": {
                device_id: record.model_dump(mode="json")
                for device_id, record in devices.items()
            }
        }
        try:
            self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))
        except OSError as exc:
            raise StoreError(f"could not write {self.persistence_path}") from exc

    def _load_from_disk(self) -> None:
        if not self.persistence_path:
            return

        if self.persistence_path.exists():
            try:
                raw = self.persistence_path.read_text() or "{}"
                data = json.loads(raw)
            except (OSError, json.JSONDecodeError):
                logger.warning(
                    "Ignoring unreadable device snapshot %s", self.persistence_path
                )
                data = {}
            if not isinstance(data, dict):
                data = {}
            for device_id, payload in (data.get("devices") or {}).items():
                self._devices[device_id] = DeviceRecord.model_validate(payload)

        readings = self._read_readings_log()
        readings.sort(key=lambda record: (record.created_at, record.id))
        self._readings = readings
        if readings:
            self._next_id = max(record.id for record in readings) + 1
            self._last_created_at = readings[-1].created_at
        logger.info(
            "Loaded store from %s",
            self.persistence_path,
            extra={"row_count": len(readings)},
        )

    def _read_readings_log(self) -> List[ReadingRecord]:
        log_path = self.readings_log_path
        if log_path is None or not log_path.exists():
            return []

        text = log_path.read_text(encoding="utf-8")
        readings: List[ReadingRecord] = []
        for line_number, line in enumerate(text.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                readings.append(ReadingRecord.model_validate_json(line))
            except ValidationError:
                logger.warning("Skipping unreadable line %d of %s", line_number, log_path)

        # A write cut short leaves a partial last line; close it so the next
        # append starts on a line of its own.
        if text and not text.endswith("\n"):
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write("\n")
        return readings


@lru_cache
def build_default_store(path: Optional[str] = None) -> TelemetryStore:
    settings = get_settings()
    store_path = settings.store_persistence_path if path is None else path
    persistence = Path(store_path) if store_path else None
    return TelemetryStore(persistence_path=persistence)
