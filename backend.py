"""
backend.py – async client for the upstream HP exam REST backend

Every portal route talks to the backend through one BackendClient so that
timeouts, bearer forwarding, and error mapping behave the same everywhere.
Upstream failures surface as BackendError, which main.py renders as
``{"error": ..., "detail": ...}`` with the upstream status code.
"""

import logging
from typing import Any, Optional

import httpx
from fastapi import Request

from config import BACKEND_TIMEOUT, BACKEND_URL

LOGGER = logging.getLogger("hp_portal.backend")


class BackendError(Exception):
    """An upstream call failed (HTTP error status or transport failure)."""

    def __init__(self, status_code: int, message: str, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.message     = message
        self.detail      = detail


def build_async_client(
    base_url: str = BACKEND_URL,
    timeout: float = BACKEND_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url,
        timeout=httpx.Timeout(timeout),
        headers={"Accept": "application/json"},
        transport=transport,
    )


def _clean_params(params: Optional[dict]) -> Optional[dict]:
    """Drop unset query values; render booleans the way the backend expects."""
    if not params:
        return None
    out = {}
    for key, value in params.items():
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        out[key] = value
    return out or None


def _error_detail(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if isinstance(body, dict):
        return body.get("detail") or body.get("error") or body
    return body


class BackendClient:
    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client or build_async_client()

    async def request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        action: str = "reach backend",
        params: Optional[dict] = None,
        json: Any = None,
        data: Optional[dict] = None,
        files: Any = None,
    ) -> Any:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            response = await self._client.request(
                method,
                path,
                headers=headers,
                params=_clean_params(params),
                json=json,
                data=data,
                files=files,
            )
        except httpx.HTTPError as exc:
            LOGGER.warning("%s %s unreachable: %s", method, path, exc)
            raise BackendError(502, f"Failed to {action}", str(exc)) from exc

        if response.status_code >= 400:
            detail = _error_detail(response)
            LOGGER.warning("%s %s -> %s (%s)", method, path, response.status_code, detail)
            raise BackendError(response.status_code, f"Failed to {action}", detail)

        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {"raw": response.text}

    async def get(self, path: str, **kwargs) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs) -> Any:
        return await self.request("POST", path, **kwargs)

    async def put(self, path: str, **kwargs) -> Any:
        return await self.request("PUT", path, **kwargs)

    async def patch(self, path: str, **kwargs) -> Any:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs) -> Any:
        return await self.request("DELETE", path, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()


def get_backend(request: Request) -> BackendClient:
    """FastAPI dependency: the shared client opened at startup."""
    return request.app.state.backend
