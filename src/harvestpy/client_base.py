"""Base client functionality for the Harvest API."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Generic, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from harvestpy.exceptions import (
    HarvestAPIError,
    HarvestAuthError,
    HarvestDecodeError,
    HarvestError,
    HarvestNotFoundError,
    HarvestRateLimitError,
    HarvestServerError,
    HarvestTransportError,
    HarvestValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

# One pull from a paginated listing: a record, or the error that ended it.
PageResult = tuple[T | None, HarvestError | None]


class ClientConfig:
    """Configuration for Harvest API client."""

    BASE_URL = "https://api.harvestapp.com/v2"
    DEFAULT_TIMEOUT = 30.0
    # 100 requests per 15 seconds
    RATE_LIMIT_CAPACITY = 100
    RATE_LIMIT_INTERVAL = 0.15
    UPLOAD_CHUNK_SIZE = 64 * 1024
    PIPE_MAX_CHUNKS = 4


def parse_error_response(response: httpx.Response) -> HarvestAPIError:
    """Parse error response and return appropriate exception.

    Args:
        response: HTTP response from the API

    Returns:
        Appropriate HarvestAPIError subclass
    """
    status_code = response.status_code
    body = response.text
    try:
        error_data: dict[str, Any] = response.json()
        message = (
            error_data.get("error_description")
            or error_data.get("message")
            or error_data.get("error")
            or body
            or "Unknown error"
        )
    except Exception:
        message = body or f"HTTP {status_code} error"
        error_data = {}

    if not isinstance(error_data, dict):
        error_data = {}

    # Pass request and response to maintain httpx.HTTPStatusError compatibility
    request = response.request
    args = (message, status_code, error_data, request, response, body)

    if status_code in (400, 422):
        return HarvestValidationError(*args)
    elif status_code in (401, 403):
        return HarvestAuthError(*args)
    elif status_code == 404:
        return HarvestNotFoundError(*args)
    elif status_code == 429:
        return HarvestRateLimitError(*args)
    elif status_code >= 500:
        return HarvestServerError(*args)
    else:
        return HarvestAPIError(*args)


def wrap_request_error(method: str, url: str, error: httpx.RequestError) -> HarvestError:
    """Map an httpx request failure onto a HarvestError.

    A body that cannot be decompressed is a decode error; everything else
    (connection failures, timeouts, redirect loops) is a transport error.
    """
    if isinstance(error, httpx.DecodingError):
        return HarvestDecodeError(f"{method} {url} returned an undecodable body: {error}")
    return HarvestTransportError(f"{method} {url} failed: {error}")


def decode_json(response: httpx.Response) -> Any:
    """Decode a JSON response body, raising HarvestDecodeError on failure."""
    try:
        return response.json()
    except ValueError as e:
        raise HarvestDecodeError(
            f"Invalid JSON in response from {response.request.url}"
        ) from e


def parse_model(response: httpx.Response, model_class: type[T]) -> T:
    """Validate a single resource from a JSON response body."""
    try:
        return model_class.model_validate(decode_json(response))
    except ValidationError as e:
        raise HarvestDecodeError(
            f"Unexpected {model_class.__name__} in response from {response.request.url}"
        ) from e


def expense_fields(
    project_id: int,
    expense_category_id: int,
    spent_date: date | str,
    total_cost: float,
    notes: str,
) -> dict[str, str]:
    """Form fields of an expense, in the order the API receives them."""
    if isinstance(spent_date, date):
        spent_date = spent_date.isoformat()
    return {
        "spent_date": spent_date,
        "project_id": str(project_id),
        "expense_category_id": str(expense_category_id),
        "notes": notes,
        "total_cost": f"{total_cost:.15g}",
    }


@dataclass
class Page(Generic[T]):
    """One decoded page of a listing endpoint."""

    items: list[T] = field(default_factory=list)
    next_url: str | None = None


def parse_page(response: httpx.Response, field: str, model_class: type[T]) -> Page[T]:
    """Decode a page envelope.

    The envelope is a JSON object holding the records under ``field`` and
    the URL of the following page under ``links.next``.

    Args:
        response: Successful HTTP response
        field: Name of the key holding the record array
        model_class: Pydantic model class for the records

    Returns:
        The decoded page

    Raises:
        HarvestDecodeError: If the body does not have the expected shape
    """
    url = response.request.url
    data = decode_json(response)
    if not isinstance(data, dict):
        raise HarvestDecodeError(f"Expected a JSON object in response from {url}")

    records = data.get(field)
    if not isinstance(records, list):
        raise HarvestDecodeError(f"Response from {url} has no {field!r} array")

    links = data.get("links") or {}
    if not isinstance(links, dict):
        raise HarvestDecodeError(f"Malformed 'links' in response from {url}")
    next_url = links.get("next") or None
    if next_url is not None and not isinstance(next_url, str):
        raise HarvestDecodeError(f"Malformed 'links.next' in response from {url}")

    try:
        items = [model_class.model_validate(record) for record in records]
    except ValidationError as e:
        raise HarvestDecodeError(
            f"Unexpected {model_class.__name__} record in response from {url}"
        ) from e

    return Page(items=items, next_url=next_url)


class PaginatedIterator(Iterator[PageResult[T]], Generic[T]):
    """Lazy iterator over every record of a listing endpoint.

    Each pull yields an ``(item, error)`` pair. Pages are fetched one at a
    time, only once the records of the previous page have been consumed,
    by following ``links.next``. A failed fetch is yielded as
    ``(None, error)`` and ends the iteration.

    The iterator is not restartable: once exhausted it stays exhausted.
    Create a new one to iterate again.
    """

    def __init__(self, fetch: Callable[[str], Page[T]], url: str) -> None:
        """Initialize paginated iterator.

        Args:
            fetch: Function fetching and decoding the page at a URL
            url: Fully qualified URL of the first page
        """
        self.fetch = fetch
        self.url: str | None = url
        self.items: deque[T] = deque()

    def __iter__(self) -> Iterator[PageResult[T]]:
        """Return iterator."""
        return self

    def __next__(self) -> PageResult[T]:
        """Get next item, fetching new pages if needed."""
        while not self.items:
            if self.url is None:
                raise StopIteration

            url, self.url = self.url, None
            try:
                page = self.fetch(url)
            except HarvestError as e:
                logger.debug("Pagination stopped at %s: %s", url, e)
                return None, e

            self.items.extend(page.items)
            self.url = page.next_url

        return self.items.popleft(), None

    def values(self) -> Iterator[T]:
        """Iterate over the records alone, raising the error that ends the listing."""
        for item, error in self:
            if error is not None:
                raise error
            yield item


class AsyncPaginatedIterator(AsyncIterator[PageResult[T]], Generic[T]):
    """Async iterator over every record of a listing endpoint.

    Behaves like :class:`PaginatedIterator`.
    """

    def __init__(self, fetch: Callable[[str], Awaitable[Page[T]]], url: str) -> None:
        """Initialize async paginated iterator.

        Args:
            fetch: Coroutine function fetching and decoding the page at a URL
            url: Fully qualified URL of the first page
        """
        self.fetch = fetch
        self.url: str | None = url
        self.items: deque[T] = deque()

    def __aiter__(self) -> AsyncPaginatedIterator[T]:
        """Return async iterator."""
        return self

    async def __anext__(self) -> PageResult[T]:
        """Get next item, fetching new pages if needed."""
        while not self.items:
            if self.url is None:
                raise StopAsyncIteration

            url, self.url = self.url, None
            try:
                page = await self.fetch(url)
            except HarvestError as e:
                logger.debug("Pagination stopped at %s: %s", url, e)
                return None, e

            self.items.extend(page.items)
            self.url = page.next_url

        return self.items.popleft(), None

    async def values(self) -> AsyncIterator[T]:
        """Iterate over the records alone, raising the error that ends the listing."""
        async for item, error in self:
            if error is not None:
                raise error
            yield item
