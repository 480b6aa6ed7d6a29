"""
HTTP client utilities for calling external processing providers.
"""

import asyncio
from typing import Any

import aiohttp


class AsyncHTTPClient:
    """Async JSON HTTP client bound to an optional base URL."""

    def __init__(
        self,
        base_url: str = "",
        timeout: int = 30,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Initialize HTTP client."""
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.default_headers = dict(headers or {})
        self.session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> "AsyncHTTPClient":
        """Enter async context manager."""
        self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit async context manager."""
        if self.session:
            await self.session.close()

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")) or not self.base_url:
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _headers(self, headers: dict[str, Any] | None) -> dict[str, Any] | None:
        merged = {**self.default_headers, **(headers or {})}
        return merged or None

    @staticmethod
    async def _prepare_request(coro_or_ctx: Any) -> Any:
        """Normalize aiohttp request result to an async context manager."""
        if asyncio.iscoroutine(coro_or_ctx):
            return await coro_or_ctx
        return coro_or_ctx

    @staticmethod
    async def _ensure_response_ok(response: Any) -> None:
        """Invoke raise_for_status, awaiting when necessary."""
        result = response.raise_for_status()
        if asyncio.iscoroutine(result):
            await result

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        if not self.session:
            raise RuntimeError("HTTP client not initialized. Use async context manager.")

        sender = getattr(self.session, method)
        request_ctx = await self._prepare_request(sender(self._url(path), **kwargs))
        async with request_ctx as response:
            await self._ensure_response_ok(response)
            if getattr(response, "status", 200) == 204:
                return {}
            return await response.json()

    async def get(self, path: str, headers: dict[str, Any] | None = None) -> dict[str, Any]:
        """Perform GET request."""
        return await self._request("get", path, headers=self._headers(headers))

    async def post(
        self,
        path: str,
        data: dict[str, Any] | None = None,
        headers: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Perform POST request with a JSON body."""
        return await self._request("post", path, json=data, headers=self._headers(headers))

    async def delete(self, path: str, headers: dict[str, Any] | None = None) -> dict[str, Any]:
        """Perform DELETE request."""
        return await self._request("delete", path, headers=self._headers(headers))
