from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import typer

from cli.config import CLIConfig


class ApiClient:
    """Minimal HTTP client for the rule engine service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        self._client = httpx.Client(base_url=config.base_url, timeout=config.request_timeout)

    def close(self) -> None:
        self._client.close()

    def send_reading(self, reading: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._client.post("/readings", json=reading)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            self._handle_transport_error(exc)
        return response.json()

    def list_alerts(self, device_id: Optional[int] = None, limit: int = 20) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": limit}
        if device_id is not None:
            params["device_id"] = device_id
        try:
            response = self._client.get("/alerts", params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            self._handle_transport_error(exc)
        payload = response.json()
        if not isinstance(payload, list):
            raise typer.BadParameter("Unexpected response payload when listing alerts.")
        return payload

    def get_stats(self) -> Dict[str, Any]:
        try:
            response = self._client.get("/stats")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        except httpx.TransportError as exc:
            self._handle_transport_error(exc)
        return response.json()

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: Any = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except Exception:  # noqa: BLE001 - best effort parsing
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    def _handle_transport_error(self, exc: httpx.TransportError) -> None:
        typer.secho(
            f"Could not reach {self._config.base_url}: {exc}",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1)
