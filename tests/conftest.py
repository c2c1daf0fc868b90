"""Pytest fixtures for HarvestPy tests."""

import threading
from typing import Any

import pytest

from harvestpy import AsyncHarvestClient, HarvestClient


class FakeClock:
    """Manually advanced monotonic clock; sleeping advances it."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds

    async def async_sleep(self, seconds: float) -> None:
        self.sleep(seconds)


@pytest.fixture
def account_id() -> int:
    """Return a test account ID."""
    return 123456


@pytest.fixture
def api_token() -> str:
    """Return a test access token."""
    return "test_api_token_12345"


@pytest.fixture
def base_url() -> str:
    """Return the base API URL."""
    return "https://api.harvestapp.com/v2"


@pytest.fixture
def fake_clock() -> FakeClock:
    """Return a clock that only moves when slept on."""
    return FakeClock()


@pytest.fixture
def sync_client(account_id: int, api_token: str):
    """Create a sync HarvestClient for testing."""
    client = HarvestClient(account_id=account_id, token=api_token)
    yield client
    client.close()


@pytest.fixture
async def async_client(account_id: int, api_token: str):
    """Create an async HarvestClient for testing."""
    client = AsyncHarvestClient(account_id=account_id, token=api_token)
    yield client
    await client.close()


@pytest.fixture
def mock_invoice() -> dict[str, Any]:
    """Return mock invoice data."""
    return {
        "id": 13150378,
        "client_key": "9e97f4a65c5b83b1fc02f54e5a41c9dc7d458542",
        "number": "1000",
        "state": "open",
        "amount": 10700.0,
        "due_amount": 10700.0,
        "currency": "USD",
        "issue_date": "2017-06-01",
        "due_date": "2017-07-01",
        "sent_at": "2017-06-27T16:11:33Z",
        "client": {"id": 5735776, "name": "123 Industries"},
        "payment_options": ["credit_card"],
        "line_items": [
            {
                "id": 53341602,
                "kind": "Service",
                "description": "03/01/2017 - Project Management: [9:00am - 11:00am] Planning meetings",
                "quantity": 2.0,
                "unit_price": 100.0,
                "amount": 200.0,
                "taxed": False,
                "taxed2": False,
                "project": {"id": 14308069, "name": "Online Store - Phase 1", "code": "OS1"},
            }
        ],
    }


@pytest.fixture
def mock_expense() -> dict[str, Any]:
    """Return mock expense data."""
    return {
        "id": 15296442,
        "notes": "Lunch with client",
        "total_cost": 33.35,
        "spent_date": "2017-03-03",
        "project": {"id": 14307913, "name": "Marketing Website", "code": "MW"},
    }


@pytest.fixture
def mock_company() -> dict[str, Any]:
    """Return mock company data."""
    return {
        "base_uri": "https://example.harvestapp.com",
        "full_domain": "example.harvestapp.com",
        "name": "Example Company",
        "is_active": True,
        "invoice_feature": True,
        "expense_feature": True,
    }
