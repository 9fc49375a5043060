import asyncio
from typing import Any

import httpx
from loguru import logger

from narrowdown.core.version import __version__

DEFAULT_HEADERS = {
    "User-Agent": f"narrow-down/{__version__}",
    "Accept": "application/json",
}


class BaseClient:
    """
    Base asynchronous HTTP client with built-in retry logic and logging.

    Transport errors and 5xx responses are retried with exponential backoff.
    4xx responses are raised on the first attempt since repeating them cannot help.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 10.0,
        max_retries: int = 3,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.headers = {**DEFAULT_HEADERS, **(headers or {})}
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create the httpx.AsyncClient instance."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self.headers,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the underlying HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        if isinstance(exc, httpx.HTTPStatusError):
            return exc.response.status_code >= 500
        return isinstance(exc, httpx.RequestError)

    async def _request(self, method: str, url: str, max_tries: int | None = None, **kwargs) -> httpx.Response:
        """Internal request handler with retry logic."""
        client = await self.get_client()
        tries = max_tries or self.max_retries
        last_exception = None

        for attempt in range(1, tries + 1):
            try:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                return response
            except (httpx.HTTPStatusError, httpx.RequestError) as e:
                last_exception = e
                if attempt < tries and self._is_retryable(e):
                    wait_time = 0.5 * (2 ** (attempt - 1))  # Exponential backoff
                    logger.warning(
                        f"Request failed ({method} {url}): {str(e)}. "
                        f"Retrying in {wait_time}s... (Attempt {attempt}/{tries})"
                    )
                    await asyncio.sleep(wait_time)
                else:
                    logger.error(f"Request failed after {attempt} attempt(s): {str(e)}")
                    break

        if last_exception:
            raise last_exception
        raise httpx.RequestError("Request failed for unknown reasons")

    async def send_once(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Single request without retries or status checks. Callers inspect the response themselves."""
        client = await self.get_client()
        return await client.request(method, url, **kwargs)

    async def get(self, url: str, params: dict[str, Any] | None = None, **kwargs) -> dict[str, Any]:
        """Perform a GET request and return the JSON response."""
        response = await self._request("GET", url, params=params, **kwargs)
        return response.json()
