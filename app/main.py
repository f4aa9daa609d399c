from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.api import error_response, root_router, router
from logging_config import configure_logging
from services.device_keys import build_default_key_directory
from services.errors import ErrorCode, TelemetryError, internal_error
from services.ingestion import build_default_pipeline
from services.queries import build_default_queries
from services.store_executor import build_default_store_executor
from settings import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    executor = build_default_store_executor()
    build_default_key_directory()
    try:
        yield
    finally:
        executor.shutdown()
        build_default_store_executor.cache_clear()
        build_default_pipeline.cache_clear()
        build_default_queries.cache_clear()


async def handle_telemetry_error(_request: Request, exc: TelemetryError) -> JSONResponse:
    return error_response(exc)


async def handle_request_validation_error(
    _request: Request, exc: RequestValidationError
) -> JSONResponse:
    fields = {
        ".".join(str(part) for part in error["loc"]): error["msg"] for error in exc.errors()
    }
    return error_response(
        TelemetryError(ErrorCode.INVALID_PARAM, "Invalid request parameters", {"fields": fields})
    )


async def handle_unexpected_error(_request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error while serving request", exc_info=exc)
    return error_response(internal_error())


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(
        title="Telemetry Ingest",
        description="Ingestion and read API for remote temperature and humidity sensors.",
        version=settings.api_version,
        lifespan=lifespan,
    )
    app.add_exception_handler(TelemetryError, handle_telemetry_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    app.include_router(router)
    app.include_router(root_router)
    return app

app = create_app()
