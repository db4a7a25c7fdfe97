"""TransportClient - Executes wire-ready requests and classifies the outcome.

Outcomes:
    - Any HTTP reply, 2xx through 5xx: returned as a TransportResponse.
      Error status codes are not exceptions.
    - Timeout: RequestTimeout with the underlying diagnostic.
    - Anything else (DNS, refused connection, TLS, bad URL): a generic
      UnexpectedTransportError. Details are logged at DEBUG level only.

No retries are attempted.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from rest_composer.models import RequestOptions, TransportResponse

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 60000

UNEXPECTED_ERROR_MESSAGE = "Unexpected error occurred"


class TransportError(Exception):
    """Base class for transport errors."""


class RequestTimeout(TransportError):
    """Raised when no reply arrived within the configured timeout."""


class UnexpectedTransportError(TransportError):
    """Raised for any other failure that produced no HTTP reply."""

    def __init__(self, message: str = UNEXPECTED_ERROR_MESSAGE) -> None:
        super().__init__(message)


class TransportClient:
    """Sends RequestOptions over HTTP.

    Usage:
        async with TransportClient(timeout_ms=5000) as client:
            response = await client.send(request_options)
    """

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            timeout_ms: Budget for the whole request in milliseconds.
            transport: Optional httpx transport (e.g. httpx.MockTransport in tests).
        """
        if timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {timeout_ms}")
        self._timeout_ms = timeout_ms
        self._client = httpx.AsyncClient(
            timeout=timeout_ms / 1000.0,
            transport=transport,
            follow_redirects=False,
        )

    @property
    def timeout_ms(self) -> int:
        return self._timeout_ms

    async def __aenter__(self) -> "TransportClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send(self, request_options: RequestOptions) -> TransportResponse:
        """Execute one request.

        Args:
            request_options: The (already signed) request.

        Returns:
            TransportResponse for any HTTP status, with request_headers set to
            the headers actually transmitted.

        Raises:
            RequestTimeout: If the timeout budget was exceeded.
            UnexpectedTransportError: If the request failed without a reply.
        """
        headers = [(header.name, header.value) for header in request_options.headers]
        content = request_options.body.encode("utf-8") if request_options.body else None

        logger.debug("%s %s", request_options.method.value, request_options.url)
        try:
            start_time = time.perf_counter()
            http_response = await self._client.request(
                method=request_options.method.value,
                url=request_options.url,
                headers=headers,
                content=content,
            )
            elapsed_ms = (time.perf_counter() - start_time) * 1000
        except httpx.TimeoutException as e:
            message = str(e) or f"timeout of {self._timeout_ms}ms exceeded"
            raise RequestTimeout(message) from e
        except (httpx.HTTPError, httpx.InvalidURL, UnicodeEncodeError) as e:
            logger.debug("Transport failure for %s: %r", request_options.url, e)
            raise UnexpectedTransportError() from None

        return _convert_response(http_response, elapsed_ms)


def _convert_response(response: httpx.Response, elapsed_ms: float) -> TransportResponse:
    """Convert an httpx Response into a TransportResponse.

    Repeated headers are joined with ", " as httpx does for Headers.items().
    """
    return TransportResponse(
        status_code=response.status_code,
        reason_phrase=response.reason_phrase,
        headers={key.lower(): value for key, value in response.headers.items()},
        body=response.text,
        http_version=response.http_version,
        elapsed_ms=elapsed_ms,
        request_headers={key: value for key, value in response.request.headers.items()},
    )
