from __future__ import annotations

from typing import Any, Dict, Optional

import httpx
import typer

from cli.config import CLIConfig


class ApiClient:
    """Minimal HTTP client for the telemetry service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.timeout)

    def close(self) -> None:
        self._client.close()

    def send_reading(self, payload: Dict[str, Any], device_key: Optional[str] = None) -> int:
        key = device_key or self._config.device_key
        headers = {"x-device-key": key} if key else {}
        response = self._request("POST", "/api/ingest", json=payload, headers=headers)
        inserted_id = response.get("inserted_id")
        if not isinstance(inserted_id, int):
            raise typer.BadParameter("Unexpected response payload when sending reading.")
        return inserted_id

    def get_latest(self, device_id: str) -> Dict[str, Any]:
        return self._request("GET", "/api/latest", params={"device_id": device_id})

    def get_range(
        self,
        device_id: str,
        minutes: Optional[int] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"device_id": device_id}
        if minutes is not None:
            params["minutes"] = minutes
        if start is not None:
            params["from"] = start
        if end is not None:
            params["to"] = end
        return self._request("GET", "/api/range", params=params)

    def get_health(self) -> Dict[str, Any]:
        return self._request("GET", "/api/health")

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.RequestError as exc:
            typer.secho(f"Could not reach {self._config.base_url}: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)
        return response.json()

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        code: str | None = None
        detail: str | None = None
        try:
            error = exc.response.json().get("error") or {}
            code = error.get("code")
            detail = error.get("message")
        except Exception:  # noqa: BLE001 - best effort parsing
            detail = exc.response.text.strip()
        prefix = f"{code}: " if code else ""
        message = (
            f"Request failed with status {exc.response.status_code}: "
            f"{prefix}{detail or 'no detail provided.'}"
        )
        retry_after = exc.response.headers.get("Retry-After")
        if retry_after:
            message += f" (retry after {retry_after}s)"
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
