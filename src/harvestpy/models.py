"""Pydantic models for Harvest API resources."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import AliasChoices, BaseModel, Field


class Company(BaseModel):
    """Company the authenticated account belongs to."""

    base_uri: str
    full_domain: str | None = None
    name: str | None = None
    is_active: bool | None = None
    week_start_day: str | None = None
    wants_timestamp_timers: bool | None = None
    time_format: str | None = None
    plan_type: str | None = None
    expense_feature: bool | None = None
    invoice_feature: bool | None = None
    estimate_feature: bool | None = None
    approval_feature: bool | None = None
    clock: str | None = None
    decimal_symbol: str | None = None
    thousands_separator: str | None = None
    color_scheme: str | None = None


class Project(BaseModel):
    id: int
    name: str | None = None
    code: str | None = None


class Customer(BaseModel):
    """A Harvest client (the customer being invoiced)."""

    id: int | None = None
    name: str | None = None


class LineItem(BaseModel):
    id: int | None = None
    project: Project | None = None
    kind: str | None = None
    description: str | None = None
    quantity: float | None = None
    unit_price: float | None = None
    amount: float | None = None
    taxed: bool | None = None
    # Harvest documents "taxed2"; older payloads spell it "taxed_2"
    taxed2: bool | None = Field(default=None, validation_alias=AliasChoices("taxed2", "taxed_2"))


class Invoice(BaseModel):
    id: int | None = None
    client_id: int | None = None
    client_key: str | None = None
    number: str | None = None
    purchase_order: str | None = None
    state: str | None = None
    sent_at: datetime | None = None
    paid_at: datetime | None = None
    closed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    client: Customer | None = None
    amount: float | None = None
    due_amount: float | None = None
    tax: float | None = None
    tax_amount: float | None = None
    tax2: float | None = None
    tax2_amount: float | None = None
    discount: float | None = None
    discount_amount: float | None = None
    subject: str | None = None
    notes: str | None = None
    currency: str | None = None
    period_start: date | None = None
    period_end: date | None = None
    issue_date: date | None = None
    due_date: date | None = None
    payment_term: str | None = None
    payment_options: list[str] = Field(default_factory=list)
    paid_date: date | None = None
    line_items: list[LineItem] = Field(default_factory=list)


class Expense(BaseModel):
    id: int
    project: Project | None = None
    spent_date: date | None = None
    notes: str | None = None
    total_cost: float | None = None


class Recipient(BaseModel):
    name: str
    email: str


class Contact(BaseModel):
    id: int | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None


class CreateMessageRequest(BaseModel):
    recipients: list[Recipient]
    send_me_a_copy: bool = True
    include_link_to_client_invoice: bool = True
    attach_pdf: bool = True
    subject: str
    body: str


class MarkSentRequest(BaseModel):
    event_type: str = "send"


class CreatePaymentRequest(BaseModel):
    amount: float
    paid_date: date
    notes: str = ""
