"""Synchronous Harvest API client."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date
from functools import partial
from pathlib import Path
from typing import Any, BinaryIO, TypeVar

import httpx
from pydantic import BaseModel

from harvestpy._version import __version__
from harvestpy.auth import RateLimiter, TokenAuth
from harvestpy.client_base import (
    ClientConfig,
    Page,
    PaginatedIterator,
    expense_fields,
    parse_error_response,
    parse_model,
    parse_page,
    wrap_request_error,
)
from harvestpy.models import (
    Company,
    Contact,
    CreateMessageRequest,
    CreatePaymentRequest,
    Customer,
    Expense,
    Invoice,
    MarkSentRequest,
    Recipient,
)
from harvestpy.upload import UploadJob, UploadPipeline, prepare_receipt

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class HarvestClient:
    """Synchronous client for the Harvest API.

    Every request goes through one shared rate limiter, so the client can
    be used from several threads without exceeding the remote quota.
    """

    def __init__(
        self,
        *,
        account_id: int | None = None,
        token: str | None = None,
        base_url: str = ClientConfig.BASE_URL,
        timeout: float = ClientConfig.DEFAULT_TIMEOUT,
        rate_limiter: RateLimiter | None = None,
        transport: httpx.BaseTransport | None = None,
        upload_pipeline: UploadPipeline | None = None,
    ) -> None:
        """Initialize Harvest client.

        Args:
            account_id: Harvest account ID
            token: Personal access token
            base_url: Base URL for API (default: https://api.harvestapp.com/v2)
            timeout: Request timeout in seconds
            rate_limiter: Rate limiter to share, a new one allowing
                100 requests per 15 seconds is created if omitted
            transport: Custom httpx transport
            upload_pipeline: Pipeline used for streaming uploads

        Raises:
            ValueError: If account_id or token is missing
        """
        if not account_id or not token:
            raise ValueError("Both account_id and token must be provided")

        self.base_url = base_url
        self.timeout = timeout
        self.auth = TokenAuth(account_id, token)
        self.rate_limiter = rate_limiter or RateLimiter(
            ClientConfig.RATE_LIMIT_CAPACITY, ClientConfig.RATE_LIMIT_INTERVAL
        )
        self.upload_pipeline = upload_pipeline or UploadPipeline()
        self._company: Company | None = None

        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=transport,
            headers={
                "User-Agent": f"HarvestPy/{__version__}",
            },
        )

    def __enter__(self) -> HarvestClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Context manager exit."""
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        expected_status: int | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Make an HTTP request with rate limiting and auth.

        Args:
            method: HTTP method
            endpoint: API endpoint path or absolute URL
            expected_status: Only accept this status code
            **kwargs: Additional arguments for httpx request

        Returns:
            HTTP response

        Raises:
            HarvestAPIError: On non-success responses
            HarvestDecodeError: If the body cannot be decompressed
            HarvestTransportError: On network failures
        """
        self.rate_limiter.acquire()

        headers = self.auth.get_headers()
        if "headers" in kwargs:
            headers.update(kwargs.pop("headers"))

        logger.debug("%s %s", method, endpoint)
        try:
            response = self.client.request(
                method=method,
                url=endpoint,
                headers=headers,
                **kwargs,
            )
        except httpx.RequestError as e:
            raise wrap_request_error(method, endpoint, e) from e

        if not response.is_success or (
            expected_status is not None and response.status_code != expected_status
        ):
            raise parse_error_response(response)

        return response

    @contextmanager
    def _stream(self, method: str, url: str, **kwargs: Any) -> Iterator[httpx.Response]:
        """Make a rate limited request whose body is read while streaming."""
        self.rate_limiter.acquire()

        logger.debug("%s %s (streaming)", method, url)
        try:
            with self.client.stream(method, url, **kwargs) as response:
                if not response.is_success:
                    response.read()
                    raise parse_error_response(response)
                yield response
        except httpx.RequestError as e:
            raise wrap_request_error(method, url, e) from e

    def _listing_url(self, path: str, **params: Any) -> str:
        query = {key: value for key, value in params.items() if value is not None}
        return str(httpx.URL(f"{self.base_url.rstrip('/')}/{path}", params=query))

    # Pagination

    def fetch_page(self, url: str, field: str, model_class: type[T]) -> Page[T]:
        """Fetch one page of a listing endpoint.

        Args:
            url: Fully qualified page URL, including the query
            field: Name of the key holding the records
            model_class: Pydantic model class for the records

        Returns:
            The records and the URL of the next page, if any

        Raises:
            HarvestAPIError: On non-success responses
            HarvestDecodeError: If the body is not a page envelope
            HarvestTransportError: On network failures
        """
        response = self._request("GET", url)
        page = parse_page(response, field, model_class)
        logger.debug("Fetched %d %s, next page: %s", len(page.items), field, page.next_url)
        return page

    def _paginate(
        self, field: str, model_class: type[T], **params: Any
    ) -> PaginatedIterator[T]:
        url = self._listing_url(field, **params)
        return PaginatedIterator(partial(self.fetch_page, field=field, model_class=model_class), url)

    def invoices(self, client_id: int | None = None) -> PaginatedIterator[Invoice]:
        """Iterate over all invoices, optionally for one client.

        Returns:
            Lazy iterator of ``(invoice, error)`` pairs
        """
        return self._paginate("invoices", Invoice, client_id=client_id)

    def customers(self) -> PaginatedIterator[Customer]:
        """Iterate over all clients of the account."""
        return self._paginate("clients", Customer)

    def expenses(self, client_id: int | None = None) -> PaginatedIterator[Expense]:
        """Iterate over all expenses, optionally for one client."""
        return self._paginate("expenses", Expense, client_id=client_id)

    def fetch_invoices(self, client_id: int | None = None) -> list[Invoice]:
        """Get the first page of invoices."""
        url = self._listing_url("invoices", client_id=client_id)
        return self.fetch_page(url, "invoices", Invoice).items

    def fetch_customers(self) -> list[Customer]:
        """Get the first page of clients."""
        return self.fetch_page(self._listing_url("clients"), "clients", Customer).items

    def fetch_expenses(self, client_id: int | None = None) -> list[Expense]:
        """Get the first page of expenses."""
        url = self._listing_url("expenses", client_id=client_id)
        return self.fetch_page(url, "expenses", Expense).items

    # Company

    def get_company_info(self) -> Company:
        """Get the company of the account, cached after the first call."""
        if self._company is None:
            response = self._request("GET", "/company")
            self._company = parse_model(response, Company)
        return self._company

    def get_recipients(self, customer_id: int) -> list[Recipient]:
        """Get the contacts of a client as invoice recipients.

        Args:
            customer_id: Harvest client ID

        Returns:
            Recipients named after the contacts' first and last names
        """
        response = self._request("GET", "/contacts", params={"client_id": customer_id})
        contacts = parse_page(response, "contacts", Contact).items
        return [
            Recipient(
                name=f"{contact.first_name or ''} {contact.last_name or ''}",
                email=contact.email or "",
            )
            for contact in contacts
        ]

    # Invoices

    def create_invoice(self, invoice: Invoice) -> Invoice:
        """Create an invoice.

        Returns:
            The invoice as created by the API
        """
        response = self._request(
            "POST",
            "/invoices",
            json=invoice.model_dump(exclude_none=True, mode="json"),
            expected_status=201,
        )
        return parse_model(response, Invoice)

    def send_invoice(
        self,
        invoice_id: int,
        subject: str,
        body: str,
        recipients: Iterable[Recipient],
    ) -> None:
        """Email an invoice with its PDF attached and a copy to the sender."""
        message = CreateMessageRequest(recipients=list(recipients), subject=subject, body=body)
        self._request(
            "POST",
            f"/invoices/{invoice_id}/messages",
            json=message.model_dump(mode="json"),
            expected_status=201,
        )

    def mark_invoice_sent(self, invoice_id: int) -> None:
        """Mark a draft invoice as sent without emailing it."""
        self._request(
            "POST",
            f"/invoices/{invoice_id}/messages",
            json=MarkSentRequest().model_dump(mode="json"),
            expected_status=201,
        )

    def add_invoice_payment(
        self,
        invoice_id: int,
        amount: float,
        paid_date: date,
        notes: str = "",
    ) -> None:
        """Record a payment on an invoice."""
        payment = CreatePaymentRequest(amount=amount, paid_date=paid_date, notes=notes)
        self._request(
            "POST",
            f"/invoices/{invoice_id}/payments",
            json=payment.model_dump(mode="json"),
            expected_status=201,
        )

    def download_invoice(self, client_key: str, destination: BinaryIO) -> int:
        """Stream the PDF of an invoice into ``destination``.

        Args:
            client_key: Client key of the invoice
            destination: Writable binary file

        Returns:
            Number of bytes written
        """
        company = self.get_company_info()
        url = f"{company.base_uri}/client/invoices/{client_key}.pdf"

        written = 0
        with self._stream("GET", url) as response:
            for chunk in response.iter_bytes():
                destination.write(chunk)
                written += len(chunk)
        return written

    # Expenses

    def create_expense(
        self,
        project_id: int,
        expense_category_id: int,
        spent_date: date | str,
        total_cost: float,
        notes: str = "",
        receipt: Path | str | BinaryIO | None = None,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> Expense:
        """Create an expense, streaming the receipt as it is uploaded.

        Args:
            project_id: Project the expense belongs to
            expense_category_id: Expense category
            spent_date: Date the expense occurred
            total_cost: Total amount of the expense
            notes: Expense notes
            receipt: Optional receipt file path or binary file object
            filename: Optional receipt filename override
            content_type: Optional receipt content type

        Returns:
            The created expense
        """
        fields = expense_fields(project_id, expense_category_id, spent_date, total_cost, notes)

        def transmit(body: Iterable[bytes], body_type: str) -> httpx.Response:
            return self._request(
                "POST",
                "/expenses",
                content=body,
                headers={"Content-Type": body_type},
                expected_status=201,
            )

        with prepare_receipt(receipt, filename, content_type) as part:
            response = self.upload_pipeline.run(UploadJob(fields, part), transmit)
        return parse_model(response, Expense)
