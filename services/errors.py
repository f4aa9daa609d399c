"""Error taxonomy shared by the ingestion and query services."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Machine-readable error kinds returned in the response envelope."""

    INVALID_JSON = "INVALID_JSON"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    MISSING_PARAM = "MISSING_PARAM"
    INVALID_PARAM = "INVALID_PARAM"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    DB_ERROR = "DB_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


_HTTP_STATUS: Dict[ErrorCode, int] = {
    ErrorCode.INVALID_JSON: 400,
    ErrorCode.INVALID_PAYLOAD: 400,
    ErrorCode.MISSING_PARAM: 400,
    ErrorCode.INVALID_PARAM: 400,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.DB_ERROR: 500,
    ErrorCode.INTERNAL_ERROR: 500,
}


class TelemetryError(Exception):
    """A classified failure that maps onto one HTTP status and error code."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details
        self.retry_after = retry_after

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.code]

    @property
    def is_client_error(self) -> bool:
        return self.http_status < 500

    def __repr__(self) -> str:
        return f"TelemetryError(code={self.code.value!r}, message={self.message!r})"


def internal_error() -> TelemetryError:
    return TelemetryError(ErrorCode.INTERNAL_ERROR, "Unknown error")


def db_error(message: str = "Database error") -> TelemetryError:
    return TelemetryError(ErrorCode.DB_ERROR, message)
