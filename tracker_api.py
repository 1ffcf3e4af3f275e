"""HTTP client for the student performance REST API.

Every call reads the bearer token from token storage at call time, so a login
or logout is picked up without rebuilding the client.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx
from flask import session

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://student-performance-backend-f07w.onrender.com/api"
TOKEN_KEY = "token"


class ApiError(Exception):
    """A request to the remote API failed (HTTP status or transport)."""

    def __init__(self, method: str, path: str, cause: Exception):
        self.method = method
        self.path = path
        self.cause = cause
        self.status_code: Optional[int] = None
        if isinstance(cause, httpx.HTTPStatusError):
            self.status_code = cause.response.status_code
        super().__init__(f"{method} {path} failed: {cause}")


class SessionTokenStorage:
    """Keeps the token in the signed Flask session cookie."""

    def get_token(self) -> Optional[str]:
        return session.get(TOKEN_KEY)

    def set_token(self, token: str) -> None:
        session.permanent = True
        session[TOKEN_KEY] = token

    def clear_token(self) -> None:
        session.pop(TOKEN_KEY, None)


class MemoryTokenStorage:
    def __init__(self, token: Optional[str] = None):
        self.token = token

    def get_token(self) -> Optional[str]:
        return self.token

    def set_token(self, token: str) -> None:
        self.token = token

    def clear_token(self) -> None:
        self.token = None


class ApiClient:
    """Verb-based access to the REST API at a fixed base URL.

    Args:
        base_url: API root, e.g. ``https://host/api``.
        storage: object with ``get_token()``; consulted on every request.
        transport: optional ``httpx`` async transport (tests pass a MockTransport).
    """

    def __init__(self, base_url: str, storage, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.storage = storage
        self.transport = transport

    def _headers(self) -> dict:
        headers = {"Accept": "application/json"}
        token = self.storage.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def request(self, method: str, path: str, payload: Optional[dict] = None):
        # One client per call: Flask handlers run each intent on its own event loop.
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                response = await client.request(method, self.base_url + path, json=payload, headers=self._headers())
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ApiError(method, path, exc) from exc

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            logger.debug("Non-JSON body from %s %s", method, path)
            return None

    async def get(self, path: str):
        return await self.request("GET", path)

    async def post(self, path: str, payload: dict):
        return await self.request("POST", path, payload)

    async def delete(self, path: str):
        return await self.request("DELETE", path)
