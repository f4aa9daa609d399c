"""HTTP route definitions for the service."""

from __future__ import annotations

import hmac
import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from app.schemas import (
    DebugInfo,
    DebugResponse,
    ErrorBody,
    ErrorResponse,
    HealthResponse,
    IngestResponse,
    LatestResponse,
    RangeResponse,
)
from services.errors import ErrorCode, TelemetryError, internal_error
from services.ingestion import IngestionPipeline, build_default_pipeline
from services.queries import (
    QueryService,
    build_default_queries,
    require_device_id,
    selector_from_params,
)
from settings import Settings, get_settings

router = APIRouter(prefix="/api")

_ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
}


def get_pipeline() -> IngestionPipeline:
    return build_default_pipeline()


def get_queries() -> QueryService:
    return build_default_queries()


def error_response(error: TelemetryError) -> JSONResponse:
    body = ErrorResponse(
        error=ErrorBody(code=error.code, message=error.message, details=error.details)
    )
    headers: Dict[str, str] = {}
    if error.retry_after is not None:
        headers["Retry-After"] = str(max(1, math.ceil(error.retry_after)))
    return JSONResponse(
        status_code=error.http_status,
        content=body.model_dump(mode="json", exclude_none=True),
        headers=headers,
    )


@router.post(
    "/ingest",
    response_model=IngestResponse,
    responses={
        **_ERROR_RESPONSES,
        status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
        status.HTTP_429_TOO_MANY_REQUESTS: {"model": ErrorResponse},
    },
    summary="Accept one telemetry reading from a device.",
)
async def ingest_reading(
    request: Request,
    x_device_key: Optional[str] = Header(None, description="Shared secret of the device."),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> IngestResponse | JSONResponse:
    raw_body = await request.body()
    result = await run_in_threadpool(pipeline.ingest, raw_body, x_device_key)
    if result.error is not None:
        return error_response(result.error)
    if result.inserted_id is None:
        return error_response(internal_error())
    return IngestResponse(inserted_id=result.inserted_id)


@router.get(
    "/latest",
    response_model=LatestResponse,
    responses={**_ERROR_RESPONSES, status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Most recent reading for a device.",
)
def latest_reading(
    device_id: Optional[str] = Query(None),
    queries: QueryService = Depends(get_queries),
) -> LatestResponse:
    record = queries.latest(device_id)
    return LatestResponse(data=record.public_view())


@router.get(
    "/range",
    response_model=RangeResponse,
    responses=_ERROR_RESPONSES,
    summary="Readings for a device over a relative or absolute window, oldest first.",
)
def reading_range(
    device_id: Optional[str] = Query(None),
    minutes: Optional[str] = Query(None, description="Relative window in minutes."),
    from_: Optional[str] = Query(None, alias="from", description="ISO-8601 lower bound."),
    to: Optional[str] = Query(None, description="ISO-8601 upper bound."),
    queries: QueryService = Depends(get_queries),
) -> RangeResponse:
    device_id = require_device_id(device_id)
    selector = selector_from_params(minutes, from_, to)
    records = queries.range(device_id, selector)
    return RangeResponse(data=[record.public_view() for record in records])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck(settings: Settings = Depends(get_settings)) -> HealthResponse:
    return HealthResponse(time=datetime.now(timezone.utc), version=settings.api_version)


@router.get(
    "/debug",
    response_model=DebugResponse,
    responses={status.HTTP_403_FORBIDDEN: {"model": ErrorResponse}},
    summary="Report which configuration values are present.",
)
async def debug_info(
    key: Optional[str] = Query(None),
    settings: Settings = Depends(get_settings),
) -> DebugResponse:
    if settings.is_production and not _matches_debug_key(key, settings.device_key):
        raise TelemetryError(ErrorCode.FORBIDDEN, "Forbidden")
    return DebugResponse(
        env=DebugInfo(
            has_device_key=settings.device_key is not None,
            has_device_keys_json=settings.device_keys_json is not None,
            has_store_path=settings.store_persistence_path is not None,
            environment=settings.environment,
            api_version=settings.api_version,
        )
    )


def _matches_debug_key(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


root_router = APIRouter()


@root_router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, Any]:
    return {"ok": True, "detail": "See /api/health for service status."}
