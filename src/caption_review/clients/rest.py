"""Shared aiohttp JSON transport."""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from ..exceptions import NotFoundError, TransportError

logger = logging.getLogger(__name__)

MAX_DETAIL_LENGTH = 500


class RestClient:
    """Thin JSON-over-HTTP client that maps every failure to TransportError.

    A session may be passed in; otherwise one is created lazily and closed by
    ``close``.
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 120.0,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.default_headers = dict(headers or {})
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        payload: Any = None,
        data: Optional[bytes] = None,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
        expect_json: bool = True,
    ) -> Any:
        """
        Perform one HTTP call.

        Args:
            operation: Name used in errors and logs
            method: HTTP method
            path: Path relative to base_url, or an absolute URL
            token: Bearer credential
            payload: JSON body
            data: Raw body (mutually exclusive with payload)

        Returns:
            Decoded JSON body, or None for empty bodies / expect_json=False

        Raises:
            NotFoundError: HTTP 404
            TransportError: any other failure
        """
        request_headers = dict(self.default_headers)
        if token:
            request_headers["Authorization"] = f"Bearer {token}"
        if headers:
            request_headers.update(headers)

        url = self.url_for(path)
        logger.debug(f"{operation}: {method} {url}")

        try:
            async with self._get_session().request(
                method,
                url,
                json=payload,
                data=data,
                params=params,
                headers=request_headers,
                timeout=self.timeout,
            ) as response:
                if not 200 <= response.status < 300:
                    detail = (await response.text())[:MAX_DETAIL_LENGTH]
                    error_cls = NotFoundError if response.status == 404 else TransportError
                    raise error_cls(operation, detail, response.status)

                if not expect_json:
                    return None

                try:
                    # Empty bodies decode to None
                    return await response.json(content_type=None)
                except (aiohttp.ContentTypeError, json.JSONDecodeError) as e:
                    raise TransportError(operation, f"Invalid JSON response: {e}", response.status)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(operation, str(e) or type(e).__name__) from e

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
