"""Content fetcher for downloading page bodies from URLs.

Honors a per-request timeout and an external cancellation token, whichever
fires first.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

import httpx

from bookmark_index.core.cancellation import CancelToken, OperationCancelled
from bookmark_index.core.settings import Settings

logger = logging.getLogger(__name__)


class FetchErrorType(str, Enum):
    """Classification of fetch errors for retry strategy."""

    TIMEOUT = "timeout"  # Retriable
    HTTP_4XX = "http_4xx"  # Not retriable (404, 403, etc.)
    HTTP_5XX = "http_5xx"  # Retriable (server error)
    CONNECTION_ERROR = "connection_error"  # Retriable
    CONTENT_TOO_SMALL = "content_too_small"  # Not retriable
    CONTENT_TOO_LARGE = "content_too_large"  # Not retriable
    CANCELLED = "cancelled"  # Pipeline stopped


# Error types that can be retried
RETRIABLE_ERRORS = {FetchErrorType.TIMEOUT, FetchErrorType.HTTP_5XX, FetchErrorType.CONNECTION_ERROR}


class FetchError(Exception):
    """A page could not be fetched."""

    def __init__(
        self,
        message: str,
        error_type: FetchErrorType,
        http_status: int | None = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.http_status = http_status

    @property
    def retriable(self) -> bool:
        """Whether this error can be retried."""
        return self.error_type in RETRIABLE_ERRORS


# Minimum body length to consider a page worth processing
MIN_CONTENT_LENGTH = 100

# Maximum content size to fetch (10MB)
MAX_CONTENT_SIZE = 10 * 1024 * 1024

# HTTP timeout
FETCH_TIMEOUT = 15.0


class ContentFetcher:
    """Downloads raw page content.

    Safe for concurrent use: one pooled httpx client serves all requests.
    """

    def __init__(
        self,
        timeout: float = FETCH_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient | None = None) -> ContentFetcher:
        return cls(timeout=settings.fetch_timeout, client=client)

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                headers={
                    "User-Agent": "Mozilla/5.0 (compatible; BookmarkIndex/1.0)",
                    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                },
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def fetch(self, url: str, cancel_token: CancelToken | None = None) -> str:
        """Fetch the body of a URL.

        Args:
            url: The URL to fetch.
            cancel_token: Optional token that aborts the request when fired.

        Returns:
            The response body as text.

        Raises:
            FetchError: On timeout, cancellation, network failure, a
                non-success status or an undersized body.
        """
        client = self._get_client()
        request = client.get(url)
        if cancel_token is not None:
            request = cancel_token.guard(request)

        try:
            response = await asyncio.wait_for(request, timeout=self._timeout)

        except OperationCancelled as e:
            raise FetchError("Request cancelled", FetchErrorType.CANCELLED) from e

        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise FetchError(
                f"Request timed out after {self._timeout}s",
                FetchErrorType.TIMEOUT,
            ) from e

        except httpx.TransportError as e:
            raise FetchError(f"Connection error: {e}", FetchErrorType.CONNECTION_ERROR) from e

        status = response.status_code
        if not response.is_success:
            error_type = FetchErrorType.HTTP_5XX if status >= 500 else FetchErrorType.HTTP_4XX
            raise FetchError(f"HTTP {status}: {response.reason_phrase}", error_type, http_status=status)

        content_length = response.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > MAX_CONTENT_SIZE:
            raise FetchError(
                f"Content too large: {content_length} bytes",
                FetchErrorType.CONTENT_TOO_LARGE,
                http_status=status,
            )

        body = response.text
        if len(body) < MIN_CONTENT_LENGTH:
            raise FetchError(
                f"Page content too small: {len(body)} chars (min: {MIN_CONTENT_LENGTH})",
                FetchErrorType.CONTENT_TOO_SMALL,
                http_status=status,
            )

        logger.debug(f"Downloaded {url} ({len(body)} chars)")
        return body
