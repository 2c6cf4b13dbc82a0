"""httpx-based client for the Picsta REST API.

Every endpoint answers with the envelope ``{success, data, message?}``.
``ApiClient`` unwraps it, applies the configured timeout and converts
failures into the errors of :mod:`picsta.api.errors`:

    - non-2xx status or ``success: false``  -> ApiError
    - timeout                                -> RequestTimeoutError
    - connection-level failure               -> TransportError

Usage:
    async with ApiClient(base_url, cookies={"accessToken": "..."}) as api:
        body = await api.get("/chats")
        chats = body["data"]
"""
import logging
from typing import Any, Dict, Optional

import httpx

from .errors import ApiError, RequestTimeoutError, TransportError

logger = logging.getLogger(__name__)

# Default timeout for REST calls (in seconds)
DEFAULT_TIMEOUT_SECONDS = 10.0


class ApiClient:
    """Thin async wrapper around ``httpx.AsyncClient`` for the Picsta API.

    Args:
        base_url: API root, e.g. ``http://localhost:5000/api``.
        cookies: Session cookies sent with every request.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests mount an ASGI app here).
    """

    def __init__(
        self,
        base_url: str,
        cookies: Optional[Dict[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout = timeout
        self._http = httpx.AsyncClient(
            base_url=base_url,
            cookies=cookies,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.aclose()

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("POST", path, json=json)

    async def put(self, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("PUT", path, json=json)

    async def patch(self, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("PATCH", path, json=json)

    async def delete(self, path: str) -> Dict[str, Any]:
        return await self.request("DELETE", path)

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send a request and return the decoded envelope body.

        Raises:
            ApiError: The server rejected the request.
            RequestTimeoutError: No response within the timeout.
            TransportError: The request could not be delivered.
        """
        # Relative to base_url: httpx appends it to the base path.
        url = path.lstrip("/")
        try:
            response = await self._http.request(method, url, json=json, params=params)
        except httpx.TimeoutException as exc:
            logger.warning("[Api] %s %s timed out after %ss", method, path, self._timeout)
            raise RequestTimeoutError(method, path, self._timeout) from exc
        except httpx.TransportError as exc:
            logger.warning("[Api] %s %s transport error: %s", method, path, exc)
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        body = self._decode(response)
        if response.is_error or not body.get("success", False):
            message = body.get("message") or (
                f"{method} {path} failed with HTTP {response.status_code}"
            )
            logger.info("[Api] %s %s rejected (%s): %s", method, path, response.status_code, message)
            raise ApiError(message, status_code=response.status_code)

        logger.debug("[Api] %s %s -> %s", method, path, response.status_code)
        return body

    # -----------------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------------

    @staticmethod
    def _decode(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"success": False} if response.is_error else {"success": True, "data": None}
        if not isinstance(body, dict):
            return {"success": response.is_success, "data": body}
        return body
