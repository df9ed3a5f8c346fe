"""
Async HTTP Client for buildresolver

This module provides the asynchronous HTTP operations providers rely on,
using aiohttp with session management, connection pooling and mapping of
transport failures onto the library's exception hierarchy.
"""

import asyncio
import importlib.metadata
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import aiohttp
from aiohttp import ClientSession, ClientTimeout, TCPConnector

from buildresolver.constants import (
    APP_NAME,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_REQUEST_TIMEOUT,
)
from buildresolver.exceptions import HTTPError, NetworkError
from buildresolver.log_utils import logger

_USER_AGENT_CACHE: Optional[str] = None


def get_user_agent() -> str:
    """
    Get the User-Agent string used for HTTP requests.

    Returns:
        The string `buildresolver/{version}`, where `{version}` is the installed package version or `unknown` if it cannot be determined.
    """
    global _USER_AGENT_CACHE

    if _USER_AGENT_CACHE is None:
        try:
            app_version = importlib.metadata.version(APP_NAME)
        except importlib.metadata.PackageNotFoundError:
            app_version = "unknown"
        _USER_AGENT_CACHE = f"{APP_NAME}/{app_version}"

    return _USER_AGENT_CACHE


class AsyncHttpClient:
    """
    Asynchronous HTTP client shared by all providers.

    Provides async methods for:
    - Fetching JSON documents and HTML listings
    - Reachability probes (HEAD or GET)
    - Bounded sample downloads used for throughput measurement

    Example:
        async with AsyncHttpClient() as client:
            index = await client.get_json("https://mirror.example/index.json")
    """

    def __init__(
        self,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_concurrent: int = 5,
        connector_limit: int = 10,
    ) -> None:
        """
        Initialize the client.

        Parameters:
            timeout (float): Default total request timeout in seconds.
            max_concurrent (int): Maximum concurrent connections per host.
            connector_limit (int): Maximum total connections in the pool.
        """

        def _clamp_positive(name: str, value: Any, default: int) -> int:
            try:
                parsed = int(value)
            except (TypeError, ValueError):
                logger.warning(
                    "Invalid %s value %r; using default of %d", name, value, default
                )
                return default
            if parsed <= 0:
                logger.warning("%s must be >= 1; clamping %d to 1", name, parsed)
                return 1
            return parsed

        self.timeout = ClientTimeout(total=timeout)
        self.max_concurrent = _clamp_positive("max_concurrent", max_concurrent, 5)
        self.connector_limit = _clamp_positive("connector_limit", connector_limit, 10)
        self._session: Optional[ClientSession] = None

    async def __aenter__(self) -> "AsyncHttpClient":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _ensure_session(self) -> ClientSession:
        """
        Ensure a session exists, creating one if needed.

        Returns:
            ClientSession: The active aiohttp session.
        """
        if self._session is None or self._session.closed:
            connector = TCPConnector(
                limit=self.connector_limit,
                limit_per_host=self.max_concurrent,
                enable_cleanup_closed=True,
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={"User-Agent": get_user_agent()},
            )
        return self._session

    async def close(self) -> None:
        """Close the client session and release resources."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _timeout_for(self, timeout: Optional[float]) -> ClientTimeout:
        return ClientTimeout(total=timeout) if timeout else self.timeout

    async def get_json(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Fetch a URL and decode its body as JSON.

        Parameters:
            url (str): Absolute URL to fetch.
            headers (Optional[Dict[str, str]]): Extra request headers, e.g. Authorization.
            timeout (Optional[float]): Per-request timeout in seconds, overriding the client default.

        Returns:
            Any: The decoded JSON value.

        Raises:
            HTTPError: On an error status; `status_code` carries the status.
            NetworkError: On transport failures, timeouts or an undecodable body.
        """
        text = await self.get_text(url, headers=headers, timeout=timeout)
        try:
            return json.loads(text)
        except ValueError as e:
            raise NetworkError(
                f"Invalid JSON received from {url}", url=url, details=str(e)
            ) from e

    async def get_text(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        Fetch a URL and return its body as text.

        Raises:
            HTTPError: On an error status.
            NetworkError: On transport failures, timeouts or a body that is not valid text.
        """
        session = await self._ensure_session()
        try:
            async with session.get(
                url, headers=headers, timeout=self._timeout_for(timeout)
            ) as response:
                if response.status >= 400:
                    raise HTTPError(
                        f"HTTP error {response.status}",
                        status_code=response.status,
                        url=url,
                    )
                try:
                    return await response.text()
                except UnicodeDecodeError as e:
                    raise NetworkError(
                        f"Undecodable body received from {url}", url=url, details=str(e)
                    ) from e
        except aiohttp.ClientResponseError as e:
            raise HTTPError(
                f"HTTP error {e.status}: {e.message}", status_code=e.status, url=url
            ) from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error: {e}", url=url) from e
        except asyncio.TimeoutError as e:
            raise NetworkError("Request timed out", url=url) from e

    async def probe(
        self, url: str, method: str = "HEAD", timeout: Optional[float] = None
    ) -> int:
        """
        Issue a lightweight request and return the response status without reading the body.

        Parameters:
            url (str): URL to probe.
            method (str): "HEAD" or "GET".
            timeout (Optional[float]): Per-request timeout in seconds.

        Returns:
            int: The HTTP status code.

        Raises:
            NetworkError: When no response was received.
        """
        session = await self._ensure_session()
        try:
            async with session.request(
                method, url, timeout=self._timeout_for(timeout), allow_redirects=True
            ) as response:
                return response.status
        except aiohttp.ClientError as e:
            raise NetworkError(f"Probe failed: {e}", url=url) from e
        except asyncio.TimeoutError as e:
            raise NetworkError("Probe timed out", url=url) from e

    async def sample_download(
        self, url: str, max_bytes: int, timeout: Optional[float] = None
    ) -> int:
        """
        Read at most `max_bytes` from the start of a resource using a Range request.

        Parameters:
            url (str): Resource to sample.
            max_bytes (int): Upper bound of bytes to read.
            timeout (Optional[float]): Total timeout for the sample in seconds.

        Returns:
            int: Number of bytes actually read.

        Raises:
            HTTPError: When the server answers with an error status.
            NetworkError: On transport failures or timeouts.
        """
        session = await self._ensure_session()
        headers = {"Range": f"bytes=0-{max(max_bytes, 1) - 1}"}
        total_read = 0
        try:
            async with session.get(
                url, headers=headers, timeout=self._timeout_for(timeout)
            ) as response:
                if response.status >= 400:
                    raise HTTPError(
                        f"HTTP error {response.status}",
                        status_code=response.status,
                        url=url,
                    )
                async for chunk in response.content.iter_chunked(DEFAULT_CHUNK_SIZE):
                    total_read += len(chunk)
                    if total_read >= max_bytes:
                        break
        except aiohttp.ClientError as e:
            raise NetworkError(f"Sample download failed: {e}", url=url) from e
        except asyncio.TimeoutError as e:
            raise NetworkError("Sample download timed out", url=url) from e
        return total_read


@asynccontextmanager
async def create_http_client(
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
    max_concurrent: int = 5,
) -> AsyncIterator[AsyncHttpClient]:
    """
    Provide a configured AsyncHttpClient and ensure it is closed after use.
    """
    client = AsyncHttpClient(timeout=timeout, max_concurrent=max_concurrent)
    try:
        yield client
    finally:
        await client.close()
