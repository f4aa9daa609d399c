from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

import pytest

from datastore.telemetry_store import StoreError, TelemetryStore
from services.device_keys import DeviceKeyDirectory
from services.errors import ErrorCode
from services.ingestion import IngestionPipeline
from services.normalizer import normalize
from services.rate_limiter import CooldownRateLimiter
from services.store_executor import StoreExecutor

DEVICE_ID = "esp32-lab-01"
DEVICE_KEY = "secret-123"
SEEN_AT = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _payload(**overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "device_id": DEVICE_ID,
        "ts_ms": 1718000000000,
        "uptime_s": 1234,
        "temp_c": 25.5,
        "hum_pct": 60.0,
        "status": "OK",
        "fw": "v1.0.0",
        "rssi": -50,
        "health": 100,
        "fail_pct": 0.5,
    }
    payload.update(overrides)
    return payload


def _body(payload: Any) -> bytes:
    return json.dumps(payload).encode("utf-8")


@pytest.fixture()
def executor() -> Iterator[StoreExecutor]:
    service = StoreExecutor(workers=2, timeout=2.0)
    yield service
    service.shutdown()


@pytest.fixture()
def limiter_clock() -> FakeClock:
    return FakeClock()


def _build(
    executor: StoreExecutor,
    store: TelemetryStore | None = None,
    limiter_clock: FakeClock | None = None,
    keys: DeviceKeyDirectory | None = None,
) -> IngestionPipeline:
    return IngestionPipeline(
        store=store or TelemetryStore(),
        key_directory=keys or DeviceKeyDirectory(device_keys={DEVICE_ID: DEVICE_KEY}),
        rate_limiter=CooldownRateLimiter(min_interval=2.0, clock=limiter_clock or FakeClock()),
        store_executor=executor,
        clock=lambda: SEEN_AT,
    )


def test_accepted_reading_matches_normalizer_output(executor) -> None:
    store = TelemetryStore()
    pipeline = _build(executor, store=store)
    payload = _payload(sensor={"temp_c": 24.0}, uptime_s=None, uptime_ms=65000)

    result = pipeline.ingest(_body(payload), DEVICE_KEY)
    executor.drain()

    assert result.ok is True
    assert result.inserted_id == 1
    record = store.latest_reading(DEVICE_ID)
    assert record is not None
    stored = record.model_dump(exclude={"id", "device_id", "created_at", "raw_json"})
    assert stored == normalize(payload).as_dict()
    assert record.temp_c == 24.0
    assert record.uptime_s == 65
    assert record.fail_pct == 50.0
    assert record.raw_json == payload

    device = store.get_device(DEVICE_ID)
    assert device is not None
    assert device.last_seen_at == SEEN_AT


def test_unrecognized_status_is_stored_and_logged(executor, caplog) -> None:
    store = TelemetryStore()
    pipeline = _build(executor, store=store)

    with caplog.at_level(logging.INFO, logger="services.ingestion"):
        result = pipeline.ingest(_body(_payload(status="BROWNOUT")), DEVICE_KEY)

    assert result.ok is True
    record = store.latest_reading(DEVICE_ID)
    assert record is not None
    assert record.status == "BROWNOUT"
    assert any(
        "Unrecognized device status" in entry.getMessage()
        and getattr(entry, "status", None) == "BROWNOUT"
        for entry in caplog.records
    )


def test_malformed_json_is_rejected_before_any_state_change(executor) -> None:
    store = TelemetryStore()
    pipeline = _build(executor, store=store)

    result = pipeline.ingest(b"{device_id: oops", DEVICE_KEY)

    assert result.ok is False
    assert result.error.code is ErrorCode.INVALID_JSON
    assert result.error.http_status == 400
    assert pipeline.rate_limiter.tracked_devices() == 0
    assert store.count_readings() == 0


def test_non_utf8_body_is_invalid_json(executor) -> None:
    result = _build(executor).ingest(b"\xff\xfe\x00", DEVICE_KEY)

    assert result.error.code is ErrorCode.INVALID_JSON


@pytest.mark.parametrize(
    ("payload", "field"),
    [
        (_payload(health=150), "health"),
        (_payload(device_id=""), "device_id"),
        ({"temp_c": 20.0}, "device_id"),
        (_payload(temp_c="25.5"), "temp_c"),
        (_payload(fail_pct=-0.1), "fail_pct"),
        (_payload(sensor={"hum_pct": "wet"}), "sensor.hum_pct"),
        ([_payload()], "_root"),
    ],
)
def test_invalid_payload_reports_field_errors(executor, payload, field) -> None:
    pipeline = _build(executor)

    result = pipeline.ingest(_body(payload), DEVICE_KEY)

    assert result.error.code is ErrorCode.INVALID_PAYLOAD
    assert field in result.error.details["field_errors"]
    assert pipeline.rate_limiter.tracked_devices() == 0


def test_unknown_fields_are_kept_in_raw_payload(executor) -> None:
    store = TelemetryStore()
    pipeline = _build(executor, store=store)
    payload = _payload(battery_mv=3712)

    result = pipeline.ingest(_body(payload), DEVICE_KEY)

    assert result.ok
    assert store.latest_reading(DEVICE_ID).raw_json["battery_mv"] == 3712


def test_second_call_inside_interval_is_rate_limited_regardless_of_auth(executor, limiter_clock) -> None:
    pipeline = _build(executor, limiter_clock=limiter_clock)

    first = pipeline.ingest(_body(_payload()), DEVICE_KEY)
    limiter_clock.now += 0.5
    second = pipeline.ingest(_body(_payload()), "wrong-key")

    assert first.ok
    assert second.error.code is ErrorCode.RATE_LIMITED
    assert second.error.http_status == 429
    assert second.error.retry_after == pytest.approx(1.5)


def test_forged_request_consumes_rate_limit_slot(executor, limiter_clock) -> None:
    pipeline = _build(executor, limiter_clock=limiter_clock)

    forged = pipeline.ingest(_body(_payload()), "guess")
    genuine = pipeline.ingest(_body(_payload()), DEVICE_KEY)
    limiter_clock.now += 2.0
    later = pipeline.ingest(_body(_payload()), DEVICE_KEY)

    assert forged.error.code is ErrorCode.UNAUTHORIZED
    assert genuine.error.code is ErrorCode.RATE_LIMITED
    assert later.ok


@pytest.mark.parametrize("provided", [None, "", "secret-12", "SECRET-123"])
def test_missing_or_wrong_key_is_unauthorized(executor, provided) -> None:
    store = TelemetryStore()
    result = _build(executor, store=store).ingest(_body(_payload()), provided)

    assert result.error.code is ErrorCode.UNAUTHORIZED
    assert result.error.http_status == 401
    assert store.count_readings() == 0


def test_device_without_configured_key_is_unauthorized(executor) -> None:
    pipeline = _build(executor, keys=DeviceKeyDirectory())

    result = pipeline.ingest(_body(_payload()), "")

    assert result.error.code is ErrorCode.UNAUTHORIZED


def test_fallback_key_authenticates_any_device(executor) -> None:
    pipeline = _build(executor, keys=DeviceKeyDirectory(fallback_key="shared"))

    result = pipeline.ingest(_body(_payload(device_id="garage-02")), "shared")

    assert result.ok


def test_device_upsert_failure_does_not_fail_ingest(executor, caplog) -> None:
    class BrokenDevicesStore(TelemetryStore):
        def upsert_device(self, device_id, seen_at):
            raise StoreError("devices table unavailable")

    store = BrokenDevicesStore()
    pipeline = _build(executor, store=store)

    with caplog.at_level(logging.ERROR):
        result = pipeline.ingest(_body(_payload()), DEVICE_KEY)
        executor.drain()

    assert result.ok
    assert store.count_readings() == 1
    assert store.get_device(DEVICE_ID) is None
    assert any(
        "upsert_device" in record.getMessage() and getattr(record, "device_id", None) == DEVICE_ID
        for record in caplog.records
    )


def test_exactly_one_device_upsert_per_accepted_call(executor, limiter_clock) -> None:
    calls: list[str] = []

    class CountingStore(TelemetryStore):
        def upsert_device(self, device_id, seen_at):
            calls.append(device_id)
            return super().upsert_device(device_id, seen_at)

    pipeline = _build(executor, store=CountingStore(), limiter_clock=limiter_clock)

    pipeline.ingest(_body(_payload()), DEVICE_KEY)
    pipeline.ingest(_body(_payload()), DEVICE_KEY)
    limiter_clock.now += 5
    pipeline.ingest(_body(_payload()), "wrong")
    limiter_clock.now += 5
    pipeline.ingest(_body(_payload()), DEVICE_KEY)
    executor.drain()

    assert calls == [DEVICE_ID, DEVICE_ID]


def test_reading_insert_failure_is_db_error_without_internal_detail(executor) -> None:
    class BrokenReadingsStore(TelemetryStore):
        def insert_reading(self, device_id, **fields):
            raise StoreError("relation readings does not exist")

    result = _build(executor, store=BrokenReadingsStore()).ingest(_body(_payload()), DEVICE_KEY)

    assert result.error.code is ErrorCode.DB_ERROR
    assert result.error.http_status == 500
    assert "relation" not in result.error.message


def test_slow_store_times_out_as_db_error() -> None:
    class SlowStore(TelemetryStore):
        def insert_reading(self, device_id, **fields):
            time.sleep(0.5)
            return super().insert_reading(device_id, **fields)

    executor = StoreExecutor(workers=2, timeout=0.05)
    try:
        result = _build(executor, store=SlowStore()).ingest(_body(_payload()), DEVICE_KEY)
    finally:
        executor.shutdown()

    assert result.error.code is ErrorCode.DB_ERROR


def test_timed_out_insert_already_running_still_commits() -> None:
    release = threading.Event()
    committed = threading.Event()

    class GatedStore(TelemetryStore):
        def insert_reading(self, device_id, **fields):
            release.wait(timeout=5)
            record = super().insert_reading(device_id, **fields)
            committed.set()
            return record

    store = GatedStore()
    executor = StoreExecutor(workers=2, timeout=0.05)
    try:
        result = _build(executor, store=store).ingest(_body(_payload()), DEVICE_KEY)
        assert result.error.code is ErrorCode.DB_ERROR
        assert store.count_readings() == 0

        release.set()
        assert committed.wait(timeout=5)
    finally:
        executor.shutdown()

    assert store.count_readings() == 1


def test_unexpected_failure_collapses_to_internal_error(executor, caplog) -> None:
    class ExplodingDirectory(DeviceKeyDirectory):
        def verify(self, device_id, provided_key):
            raise ZeroDivisionError("boom")

    pipeline = _build(executor, keys=ExplodingDirectory())

    with caplog.at_level(logging.ERROR):
        result = pipeline.ingest(_body(_payload()), DEVICE_KEY)

    assert result.error.code is ErrorCode.INTERNAL_ERROR
    assert "boom" not in result.error.message
    assert any(record.exc_info for record in caplog.records)
