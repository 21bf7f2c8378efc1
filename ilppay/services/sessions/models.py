"""Payment session record.

Sessions hold only serializable data (ids, URLs, tokens) so any store can keep
them; the gateway client is never captured.
"""

from datetime import datetime, timedelta

from pydantic import BaseModel

from ilppay.common import state_machine
from ilppay.services.gateway.models import (
    Amount,
    IncomingPaymentHandle,
    OutgoingPaymentHandle,
    QuoteHandle,
    WalletHandle,
)


class PendingGrant(BaseModel):
    """What is needed to continue the outgoing-payment grant after approval."""

    continue_uri: str
    continue_access_token: str
    redirect_url: str | None = None
    continue_wait: int | None = None


class PaymentSession(BaseModel):
    id: str
    status: str = state_machine.PENDING_AUTHORIZATION
    state_version: int = 0
    created_at: datetime
    expires_at: datetime
    completed_at: datetime | None = None

    amount: int
    receiving_wallet_url: str
    sending_wallet: WalletHandle
    receiving_wallet: WalletHandle
    incoming_payment: IncomingPaymentHandle
    quote: QuoteHandle
    outgoing_grant: PendingGrant
    outgoing_payment: OutgoingPaymentHandle | None = None
    last_error: str | None = None

    @property
    def debit_amount(self) -> Amount:
        return self.quote.debit_amount

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def older_than(self, now: datetime, ttl: timedelta) -> bool:
        return now - self.created_at >= ttl

    def transition(self, new_status: str) -> None:
        """Apply one validated state change; the store bumps `state_version`."""

        state_machine.validate_transition(self.status, new_status)
        self.status = new_status

    def mark_completed(self, payment: OutgoingPaymentHandle, now: datetime, grace: timedelta) -> None:
        self.transition(state_machine.COMPLETED)
        self.outgoing_payment = payment
        self.completed_at = now
        # Completed sessions stay readable for the grace period, never past the TTL.
        self.expires_at = min(self.expires_at, now + grace)

    def mark_errored(self, error: str) -> None:
        self.transition(state_machine.ERRORED)
        self.last_error = error

    def mark_cancelled(self) -> None:
        self.transition(state_machine.CANCELLED)
