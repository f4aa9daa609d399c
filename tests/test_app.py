from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from datastore.telemetry_store import TelemetryStore
from services.device_keys import DeviceKeyDirectory
from services.ingestion import IngestionPipeline, IngestResult
from services.queries import QueryService
from services.rate_limiter import CooldownRateLimiter
from services.store_executor import StoreExecutor
from settings import get_settings

DEVICE_ID = "esp32-lab-01"
DEVICE_KEY = "secret-123"


class CountingStore(TelemetryStore):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.list_calls = 0

    def list_readings(self, device_id, **kwargs):
        self.list_calls += 1
        return super().list_readings(device_id, **kwargs)


@pytest.fixture
def store(tmp_path) -> CountingStore:
    return CountingStore(persistence_path=tmp_path / "telemetry.json")


@pytest.fixture
def api_client(store, monkeypatch) -> Iterator[TestClient]:
    executor = StoreExecutor(workers=2, timeout=2.0)
    pipeline = IngestionPipeline(
        store=store,
        key_directory=DeviceKeyDirectory(device_keys={DEVICE_ID: DEVICE_KEY}),
        rate_limiter=CooldownRateLimiter(min_interval=2.0),
        store_executor=executor,
    )
    queries = QueryService(store=store, store_executor=executor)

    monkeypatch.setattr("app.api.build_default_pipeline", lambda: pipeline)
    monkeypatch.setattr("app.api.build_default_queries", lambda: queries)

    app = create_app()
    with TestClient(app) as client:
        yield client

    executor.shutdown()


def _ingest(client: TestClient, key: str | None = DEVICE_KEY, **fields):
    payload = {"device_id": DEVICE_ID, "temp_c": 25.5, "hum_pct": 60.0, "status": "OK"}
    payload.update(fields)
    headers = {"x-device-key": key} if key is not None else {}
    return client.post("/api/ingest", json=payload, headers=headers)


def test_ingest_then_latest(api_client: TestClient) -> None:
    response = _ingest(api_client, fail_pct=0.25)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "inserted_id": 1}

    latest = api_client.get("/api/latest", params={"device_id": DEVICE_ID})
    assert latest.status_code == 200
    body = latest.json()
    assert body["ok"] is True
    assert body["data"]["temp_c"] == 25.5
    assert body["data"]["fail_pct"] == 25.0
    assert "raw_json" not in body["data"]


def test_invalid_json_envelope(api_client: TestClient) -> None:
    response = api_client.post(
        "/api/ingest",
        content=b"{not json",
        headers={"content-type": "application/json", "x-device-key": DEVICE_KEY},
    )

    assert response.status_code == 400
    assert response.json() == {
        "ok": False,
        "error": {"code": "INVALID_JSON", "message": "Invalid JSON body"},
    }


def test_invalid_payload_carries_field_details(api_client: TestClient) -> None:
    response = _ingest(api_client, health=101)

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "INVALID_PAYLOAD"
    assert "health" in error["details"]["field_errors"]


def test_missing_key_is_unauthorized(api_client: TestClient) -> None:
    response = _ingest(api_client, key=None)

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "UNAUTHORIZED"


def test_rate_limited_response_has_retry_after(api_client: TestClient) -> None:
    assert _ingest(api_client).status_code == 200

    response = _ingest(api_client)

    assert response.status_code == 429
    assert response.json()["error"]["code"] == "RATE_LIMITED"
    assert response.headers["Retry-After"] == "2"


class EmptyResultPipeline:
    def ingest(self, raw_body, provided_key) -> IngestResult:
        return IngestResult()


def test_ingest_without_id_or_error_is_internal_error(api_client: TestClient, monkeypatch) -> None:
    monkeypatch.setattr("app.api.build_default_pipeline", lambda: EmptyResultPipeline())

    response = _ingest(api_client)

    assert response.status_code == 500
    assert response.json() == {"ok": False, "error": {"code": "INTERNAL_ERROR", "message": "Unknown error"}}


def test_latest_without_readings_is_not_found(api_client: TestClient) -> None:
    response = api_client.get("/api/latest", params={"device_id": "ghost"})

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


def test_latest_requires_device_id(api_client: TestClient) -> None:
    response = api_client.get("/api/latest")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_PARAM"


def test_range_without_selector_skips_store(api_client: TestClient, store: CountingStore) -> None:
    response = api_client.get("/api/range", params={"device_id": DEVICE_ID})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MISSING_PARAM"
    assert store.list_calls == 0


def test_range_with_minutes_returns_ascending_rows(api_client: TestClient, store: CountingStore) -> None:
    store.insert_reading(DEVICE_ID, temp_c=20.0)
    store.insert_reading(DEVICE_ID, temp_c=21.0)

    response = api_client.get("/api/range", params={"device_id": DEVICE_ID, "minutes": "60"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert [row["temp_c"] for row in data] == [20.0, 21.0]
    assert store.list_calls == 1


def test_range_with_from_and_to(api_client: TestClient, store: CountingStore) -> None:
    store.insert_reading(DEVICE_ID, temp_c=20.0)

    response = api_client.get(
        "/api/range",
        params={"device_id": DEVICE_ID, "from": "2000-01-01T00:00:00Z"},
    )

    assert response.status_code == 200
    assert len(response.json()["data"]) == 1


@pytest.mark.parametrize("minutes", ["0", "10000000000"])
def test_range_rejects_out_of_bounds_minutes(api_client: TestClient, minutes: str) -> None:
    response = api_client.get("/api/range", params={"device_id": DEVICE_ID, "minutes": minutes})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_PARAM"


def test_health(api_client: TestClient) -> None:
    response = api_client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["version"] == get_settings().api_version
    assert body["time"]


@pytest.fixture
def production_settings(monkeypatch) -> Iterator[None]:
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("DEVICE_KEY", "shared-secret")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_debug_is_forbidden_in_production_without_key(production_settings, api_client: TestClient) -> None:
    response = api_client.get("/api/debug")

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "FORBIDDEN"


def test_debug_reports_presence_flags_with_key(production_settings, api_client: TestClient) -> None:
    response = api_client.get("/api/debug", params={"key": "shared-secret"})

    assert response.status_code == 200
    env = response.json()["env"]
    assert env["has_device_key"] is True
    assert env["environment"] == "production"
    assert "shared-secret" not in response.text
