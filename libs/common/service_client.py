"""Reusable async HTTP client for the Supabase REST (PostgREST) API.

All backend calls should go through this helper so that auth headers, request
ids and timeouts are applied the same way everywhere.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
from libs.common.config import get_settings
from libs.common.logging import get_logger, get_request_id

logger = get_logger(__name__)


class SupabaseRestClient:
    """Thin wrapper around ``httpx.AsyncClient`` for ``/rest/v1`` calls.

    A fresh ``AsyncClient`` is opened per request. ``transport`` lets tests
    plug in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls) -> "SupabaseRestClient":
        settings = get_settings()
        return cls(
            base_url=settings.SUPABASE_URL,
            api_key=settings.SUPABASE_SERVICE_ROLE_KEY,
            timeout=settings.BACKEND_TIMEOUT_SECONDS,
        )

    def _headers(self, prefer: Optional[str] = None) -> dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        request_id = get_request_id()
        if request_id:
            headers["X-Request-ID"] = request_id
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        """Send one request and return the raw response.

        Raises:
            httpx.RequestError on connection failures and timeouts.
        """
        url = f"{self.base_url}/rest/v1{path}"
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport
        ) as client:
            response = await client.request(
                method,
                url,
                headers=self._headers(prefer),
                params=params,
                json=json,
            )
        logger.debug(
            "Supabase %s %s -> %s", method, path, response.status_code
        )
        return response

    async def get(self, path: str, params: Optional[dict] = None, prefer: Optional[str] = None) -> httpx.Response:
        return await self.request("GET", path, params=params, prefer=prefer)

    async def post(self, path: str, json: Any = None, prefer: Optional[str] = None) -> httpx.Response:
        return await self.request("POST", path, json=json, prefer=prefer)

    async def patch(self, path: str, params: dict, json: Any, prefer: Optional[str] = None) -> httpx.Response:
        return await self.request("PATCH", path, params=params, json=json, prefer=prefer)

    async def delete(self, path: str, params: dict, prefer: Optional[str] = None) -> httpx.Response:
        return await self.request("DELETE", path, params=params, prefer=prefer)
