"""HarvestPy - Rate limited Python client for the Harvest API."""

from harvestpy._version import __version__
from harvestpy.auth import AsyncRateLimiter, RateLimiter
from harvestpy.client_async import AsyncHarvestClient
from harvestpy.client_base import AsyncPaginatedIterator, Page, PaginatedIterator
from harvestpy.client_sync import HarvestClient
from harvestpy.exceptions import (
    HarvestAPIError,
    HarvestAuthError,
    HarvestDecodeError,
    HarvestError,
    HarvestNotFoundError,
    HarvestRateLimitError,
    HarvestServerError,
    HarvestTransportError,
    HarvestUploadError,
    HarvestValidationError,
)
from harvestpy.upload import FilePart, UploadJob

__all__ = [
    "__version__",
    "HarvestClient",
    "AsyncHarvestClient",
    "RateLimiter",
    "AsyncRateLimiter",
    "Page",
    "PaginatedIterator",
    "AsyncPaginatedIterator",
    "FilePart",
    "UploadJob",
    "HarvestError",
    "HarvestAPIError",
    "HarvestAuthError",
    "HarvestDecodeError",
    "HarvestNotFoundError",
    "HarvestRateLimitError",
    "HarvestServerError",
    "HarvestTransportError",
    "HarvestUploadError",
    "HarvestValidationError",
]
