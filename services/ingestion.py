"""Ingestion pipeline for device telemetry.

A request passes through a fixed sequence of gates:

    parse -> validate -> rate limit -> authenticate -> normalize -> persist

Each gate is a method that either returns its output or raises
:class:`~services.errors.TelemetryError`. :meth:`IngestionPipeline.ingest`
runs them in order and turns the first failure into a rejected
:class:`IngestResult`; nothing after a failing gate runs.

Rate limiting runs before authentication, keyed on the caller-supplied and
not yet verified ``device_id``. This keeps unauthenticated floods cheap to
reject, but it also means anyone who knows a device id can use up that
device's slot with forged requests.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from app.schemas import ReadingPayload, ReadingRecord
from datastore.telemetry_store import StoreError, TelemetryStore, build_default_store
from models.records import NormalizedReading
from services.device_keys import DeviceKeyDirectory, build_default_key_directory
from services.errors import ErrorCode, TelemetryError, db_error, internal_error
from services.normalizer import normalize
from services.rate_limiter import CooldownRateLimiter, build_default_rate_limiter
from services.store_executor import StoreExecutor, build_default_store_executor

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IngestResult:
    """Outcome of one ingest call: either an inserted id or an error."""

    inserted_id: Optional[int] = None
    error: Optional[TelemetryError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def accepted(cls, inserted_id: int) -> "IngestResult":
        return cls(inserted_id=inserted_id)

    @classmethod
    def rejected(cls, error: TelemetryError) -> "IngestResult":
        return cls(error=error)


def _field_errors(exc: ValidationError) -> Dict[str, List[str]]:
    errors: Dict[str, List[str]] = {}
    for item in exc.errors():
        field = ".".join(str(part) for part in item["loc"]) or "_root"
        errors.setdefault(field, []).append(item["msg"])
    return errors


class IngestionPipeline:
    """Validates, authenticates and stores readings pushed by devices."""

    def __init__(
        self,
        store: TelemetryStore,
        key_directory: DeviceKeyDirectory,
        rate_limiter: CooldownRateLimiter,
        store_executor: StoreExecutor,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.key_directory = key_directory
        self.rate_limiter = rate_limiter
        self.store_executor = store_executor
        self._clock = clock

    def ingest(self, raw_body: Union[bytes, str], provided_key: Optional[str]) -> IngestResult:
        start_time = time.perf_counter()
        device_id: Optional[str] = None
        try:
            payload = self.parse(raw_body)
            device_id = self.validate(payload).device_id
            self.check_rate_limit(device_id)
            self.authenticate(device_id, provided_key)
            reading = self.normalize(payload)
            record = self.persist(device_id, reading, payload)
        except TelemetryError as exc:
            log = logger.warning if exc.is_client_error else logger.error
            log(
                "Rejected reading: %s",
                exc.message,
                extra={"device_id": device_id, "code": exc.code.value},
            )
            return IngestResult.rejected(exc)
        except Exception:
            logger.exception(
                "Unexpected ingest failure",
                extra={"device_id": device_id, "code": ErrorCode.INTERNAL_ERROR.value},
            )
            return IngestResult.rejected(internal_error())

        logger.info(
            "Stored reading",
            extra={
                "device_id": device_id,
                "reading_id": record.id,
                "status": record.status,
                "elapsed_ms": int((time.perf_counter() - start_time) * 1000),
            },
        )
        return IngestResult.accepted(record.id)

    def parse(self, raw_body: Union[bytes, str]) -> Any:
        try:
            text = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
            return json.loads(text)
        except (UnicodeDecodeError, json.JSONDecodeError, TypeError) as exc:
            raise TelemetryError(ErrorCode.INVALID_JSON, "Invalid JSON body") from exc

    def validate(self, payload: Any) -> ReadingPayload:
        try:
            return ReadingPayload.model_validate(payload)
        except ValidationError as exc:
            raise TelemetryError(
                ErrorCode.INVALID_PAYLOAD,
                "Payload failed validation",
                details={"field_errors": _field_errors(exc)},
            ) from exc

    def check_rate_limit(self, device_id: str) -> None:
        if self.rate_limiter.allow(device_id):
            return
        raise TelemetryError(
            ErrorCode.RATE_LIMITED,
            "Too many requests",
            retry_after=self.rate_limiter.retry_after(device_id),
        )

    def authenticate(self, device_id: str, provided_key: Optional[str]) -> None:
        if not self.key_directory.verify(device_id, provided_key):
            raise TelemetryError(ErrorCode.UNAUTHORIZED, "Invalid or missing device key")

    def normalize(self, payload: Dict[str, Any]) -> NormalizedReading:
        reading = normalize(payload)
        if not reading.has_known_status:
            logger.info(
                "Unrecognized device status stored as sent",
                extra={"device_id": payload.get("device_id"), "status": reading.status},
            )
        return reading

    def persist(
        self, device_id: str, reading: NormalizedReading, payload: Dict[str, Any]
    ) -> ReadingRecord:
        seen_at = self._clock()
        try:
            self.store_executor.dispatch(
                "upsert_device",
                self.store.upsert_device,
                device_id,
                seen_at,
                device_id=device_id,
            )
        except RuntimeError as exc:
            logger.error(
                "Could not schedule device upsert: %s", exc,
                extra={"device_id": device_id},
            )

        try:
            return self.store_executor.call(
                "insert_reading",
                self.store.insert_reading,
                device_id,
                raw_json=payload,
                **reading.as_dict(),
            )
        except StoreError as exc:
            logger.error(
                "Reading insert failed: %s", exc,
                extra={"device_id": device_id, "code": ErrorCode.DB_ERROR.value},
            )
            raise db_error("Failed to save reading") from exc


@lru_cache
def build_default_pipeline() -> IngestionPipeline:
    """Factory that wires the pipeline with the default collaborators."""
    return IngestionPipeline(
        store=build_default_store(),
        key_directory=build_default_key_directory(),
        rate_limiter=build_default_rate_limiter(),
        store_executor=build_default_store_executor(),
    )
