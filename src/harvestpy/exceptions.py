"""Exceptions for the HarvestPy library."""

from typing import Any

import httpx


class HarvestError(Exception):
    """Base exception for everything raised by HarvestPy."""


class HarvestTransportError(HarvestError):
    """Raised when a request fails below the HTTP layer.

    The underlying httpx exception is available as ``__cause__``.
    """


class HarvestDecodeError(HarvestError):
    """Raised when a response body is malformed or has an unexpected shape."""


class HarvestUploadError(HarvestError):
    """Raised on the reading side of an upload whose encoder aborted."""


class HarvestAPIError(HarvestError, httpx.HTTPStatusError):
    """Raised when the API answers with a non-success status code.

    Extends httpx.HTTPStatusError so users can catch both HarvestAPIError
    and httpx.HTTPStatusError to handle API errors.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_data: dict[str, Any] | None = None,
        request: httpx.Request | None = None,
        response: httpx.Response | None = None,
        body: str = "",
    ) -> None:
        """Initialize HarvestAPIError.

        Args:
            message: Error message
            status_code: HTTP status code from the API response
            response_data: Decoded JSON error body, if any
            request: The request that caused the error
            response: The response from the API
            body: Raw response body text
        """
        if request and response:
            super().__init__(message, request=request, response=response)
        else:
            Exception.__init__(self, message)

        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}
        self.body = body

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.status_code:
            return f"[{self.status_code}] {self.message}"
        return self.message


class HarvestAuthError(HarvestAPIError):
    """Raised when authentication fails (401/403)."""

    pass


class HarvestRateLimitError(HarvestAPIError):
    """Raised when the remote quota is exceeded (429).

    Harvest allows 100 requests per 15 seconds.
    """

    pass


class HarvestNotFoundError(HarvestAPIError):
    """Raised when a resource is not found (404)."""

    pass


class HarvestValidationError(HarvestAPIError):
    """Raised when request validation fails (400/422)."""

    pass


class HarvestServerError(HarvestAPIError):
    """Raised when the server encounters an error (5xx)."""

    pass
