"""API request/response schemas for the payment session endpoints.

Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ilppay.services.gateway.models import Amount, OutgoingPaymentHandle


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitiatePaymentRequest(ApiModel):
    """Raw input; rule checking happens in the orchestrator so every violation is reported."""

    receiving_wallet: str | None = None
    amount: Any = None


class CompletePaymentRequest(ApiModel):
    session_id: str


class InitiatedPayment(ApiModel):
    success: bool = True
    session_id: str
    authorization_url: str
    continue_url: str
    amount: int
    receiving_wallet: str
    debit_amount: Amount
    message: str = "Payment initiated. User authorization is required."


class PaymentSummary(ApiModel):
    amount: int
    receiving_wallet: str
    debit_amount: Amount
    completed_at: datetime


class CompletedPayment(ApiModel):
    success: bool = True
    session_id: str
    outgoing_payment: OutgoingPaymentHandle
    summary: PaymentSummary
    message: str = "Payment completed."


class SessionStatusView(ApiModel):
    success: bool = True
    session_id: str
    status: str
    amount: int
    receiving_wallet: str
    debit_amount: Amount
    created_at: datetime
    completed_at: datetime | None = None
    error: str | None = None


class CancelledSession(ApiModel):
    success: bool = True
    session_id: str
    message: str = "Session cancelled."


class SessionStats(ApiModel):
    success: bool = True
    total_sessions: int
    by_status: dict[str, int]
    oldest_session: datetime | None = None
    uptime_seconds: float
    timestamp: datetime


class ErrorResponse(ApiModel):
    success: bool = False
    error: str
    message: str
    details: list[str] | None = None
