"""Payment session orchestration.

Drives a session through the Open Payments sequence: wallet lookups, incoming
payment, quote and interactive outgoing grant on `initiate`; grant continuation
and outgoing payment on `complete`. Sessions live only in the injected store.
"""

import asyncio
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.parse import urlsplit

from ilppay.common import state_machine
from ilppay.common.config import CommonSettings
from ilppay.common.errors import (
    InternalConfigError,
    InvalidStateError,
    PaymentFlowError,
    SessionNotFoundError,
    ValidationError,
)
from ilppay.common.logging import bind_session, logger
from ilppay.common.metrics import (
    active_sessions,
    payment_flow_duration_seconds,
    payment_flow_failures_total,
    payment_session_transitions_total,
    payment_sessions_initiated_total,
)
from ilppay.services.gateway.client import OpenPaymentsGateway, PaymentGateway
from ilppay.services.gateway.models import AccessSpec, OutgoingPaymentHandle, WalletHandle
from ilppay.services.gateway.signing import load_request_signer
from ilppay.services.orchestrator.schemas import (
    CancelledSession,
    CompletedPayment,
    InitiatedPayment,
    PaymentSummary,
    SessionStats,
    SessionStatusView,
)
from ilppay.services.sessions.models import PaymentSession, PendingGrant
from ilppay.services.sessions.store import Clock, SessionStore, build_session_store, utc_now

DEFAULT_MAX_AMOUNT = 10_000_000


def new_session_id() -> str:
    return secrets.token_urlsafe(24)


class PaymentOrchestrator:
    """Owns the payment session state machine."""

    def __init__(
        self,
        gateway: PaymentGateway,
        store: SessionStore,
        sending_wallet_url: str,
        *,
        max_amount: int = DEFAULT_MAX_AMOUNT,
        session_ttl: timedelta = timedelta(hours=1),
        completion_grace: timedelta = timedelta(minutes=5),
        clock: Clock = utc_now,
        id_factory: Callable[[], str] = new_session_id,
        service_name: str = "ilppay",
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.sending_wallet_url = sending_wallet_url
        self.max_amount = max_amount
        self.session_ttl = session_ttl
        self.completion_grace = completion_grace
        self.service_name = service_name
        self.clock = clock
        self._new_id = id_factory
        self.started_at = clock()

    def validate_request(self, receiving_wallet_url: Any, amount: Any) -> tuple[str, int]:
        """Check both inputs and report every broken rule at once."""

        errors: list[str] = []
        wallet_url = ""
        if not isinstance(receiving_wallet_url, str) or not receiving_wallet_url.strip():
            errors.append("receiving wallet URL is required")
        else:
            wallet_url = receiving_wallet_url.strip()
            try:
                parts = urlsplit(wallet_url)
                if parts.scheme != "https":
                    errors.append("receiving wallet URL must use https")
                elif not parts.hostname:
                    errors.append("receiving wallet URL is malformed")
            except ValueError:
                errors.append("receiving wallet URL is malformed")

        value = 0
        if amount is None or (isinstance(amount, str) and not amount.strip()):
            errors.append("amount is required")
        elif isinstance(amount, bool) or not isinstance(amount, (int, float, str, Decimal)):
            errors.append("amount must be a number")
        else:
            try:
                number = Decimal(str(amount).strip())
            except InvalidOperation:
                number = None
            if number is None or not number.is_finite():
                errors.append("amount must be a number")
            elif number <= 0:
                errors.append("amount must be greater than 0")
            elif number > self.max_amount:
                errors.append(f"amount exceeds the maximum of {self.max_amount}")
            elif number != number.to_integral_value():
                errors.append("amount must be a whole number of minor units")
            else:
                value = int(number)

        if errors:
            raise ValidationError(errors)
        return wallet_url, value

    def _count_transition(self, to_state: str) -> None:
        payment_session_transitions_total.labels(service=self.service_name, to_state=to_state).inc()

    def _count_failure(self, operation: str, exc: PaymentFlowError) -> None:
        payment_flow_failures_total.labels(service=self.service_name, operation=operation, kind=exc.kind).inc()

    async def initiate(self, receiving_wallet_url: Any, amount: Any) -> InitiatedPayment:
        """Run the full creation sequence; nothing is stored unless every step succeeds."""

        with payment_flow_duration_seconds.labels(service=self.service_name, operation="initiate").time():
            try:
                wallet_url, value = self.validate_request(receiving_wallet_url, amount)
                session = await self._create_session(wallet_url, value)
            except PaymentFlowError as exc:
                self._count_failure("initiate", exc)
                logger.warning("initiate_failed kind=%s error=%s", exc.kind, exc.message)
                raise

        payment_sessions_initiated_total.labels(service=self.service_name).inc()
        return InitiatedPayment(
            session_id=session.id,
            authorization_url=session.outgoing_grant.redirect_url,
            continue_url=session.outgoing_grant.continue_uri,
            amount=session.amount,
            receiving_wallet=session.receiving_wallet_url,
            debit_amount=session.quote.debit_amount,
        )

    async def _resolve_wallets(self, wallet_url: str) -> tuple[WalletHandle, WalletHandle]:
        """Look up sender and receiver concurrently; both lookups settle before any error propagates."""

        results = await asyncio.gather(
            self.gateway.get_wallet_address(self.sending_wallet_url),
            self.gateway.get_wallet_address(wallet_url),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        sender, receiver = results
        return sender, receiver

    async def _create_session(self, wallet_url: str, amount: int) -> PaymentSession:
        logger.info("initiate_started receiving_wallet=%s amount=%s", wallet_url, amount)
        created_remote: list[str] = []
        try:
            sender, receiver = await self._resolve_wallets(wallet_url)

            incoming_grant = await self.gateway.request_grant(
                receiver.auth_server, AccessSpec(type="incoming-payment")
            )
            incoming_payment = await self.gateway.create_incoming_payment(
                receiver.resource_server,
                incoming_grant.access_token,
                receiver.id,
                amount,
                receiver.asset_code,
                receiver.asset_scale,
            )
            created_remote.append(incoming_payment.id)

            quote_grant = await self.gateway.request_grant(sender.auth_server, AccessSpec(type="quote"))
            quote = await self.gateway.create_quote(
                sender.resource_server, quote_grant.access_token, sender.id, incoming_payment.id, "ilp"
            )
            created_remote.append(quote.id)

            outgoing_grant = await self.gateway.request_grant(
                sender.auth_server,
                AccessSpec(
                    type="outgoing-payment",
                    limits={"debitAmount": quote.debit_amount.model_dump(by_alias=True)},
                    identifier=sender.id,
                    interactive=True,
                ),
            )
        except Exception:
            if created_remote:
                # Remote resources are not compensated; they expire on the wallet side.
                logger.warning("initiate_aborted abandoned_remote_resources=%s", created_remote)
            raise

        now = self.clock()
        session = PaymentSession(
            id=self._new_id(),
            created_at=now,
            expires_at=now + self.session_ttl,
            amount=amount,
            receiving_wallet_url=wallet_url,
            sending_wallet=sender,
            receiving_wallet=receiver,
            incoming_payment=incoming_payment,
            quote=quote,
            outgoing_grant=PendingGrant(
                continue_uri=outgoing_grant.continue_uri,
                continue_access_token=outgoing_grant.continue_access_token,
                redirect_url=outgoing_grant.redirect_url,
                continue_wait=outgoing_grant.continue_wait,
            ),
        )
        await self.store.create(session)
        self._count_transition(state_machine.PENDING_AUTHORIZATION)
        with bind_session(session.id):
            logger.info(
                "session_created session_id=%s quote_id=%s debit_amount=%s",
                session.id,
                quote.id,
                quote.debit_amount.value,
            )
        return session

    async def complete(self, session_id: str) -> CompletedPayment:
        """Finalize the authorized grant and send the payment, exactly once per session."""

        with bind_session(session_id), payment_flow_duration_seconds.labels(
            service=self.service_name, operation="complete"
        ).time():
            try:
                session = await self._complete(session_id)
            except PaymentFlowError as exc:
                self._count_failure("complete", exc)
                raise

        return CompletedPayment(
            session_id=session.id,
            outgoing_payment=session.outgoing_payment,
            summary=PaymentSummary(
                amount=session.amount,
                receiving_wallet=session.receiving_wallet_url,
                debit_amount=session.quote.debit_amount,
                completed_at=session.completed_at,
            ),
        )

    async def _complete(self, session_id: str) -> PaymentSession:
        async with self.store.lock(session_id):
            session = await self.store.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.status != state_machine.PENDING_AUTHORIZATION:
                raise InvalidStateError(f"session {session_id} is {session.status}; only pending sessions complete")

            logger.info("complete_started session_id=%s", session_id)
            try:
                grant = await self.gateway.continue_grant(
                    session.outgoing_grant.continue_uri,
                    session.outgoing_grant.continue_access_token,
                )
                payment = await self.gateway.create_outgoing_payment(
                    session.sending_wallet.resource_server,
                    grant.access_token,
                    session.sending_wallet.id,
                    session.quote.id,
                )
            except Exception as exc:
                await self._mark_errored(session_id, exc)
                raise

            return await self._mark_completed(session, payment)

    async def _mark_errored(self, session_id: str, exc: Exception) -> None:
        message = exc.message if isinstance(exc, PaymentFlowError) else str(exc)
        try:
            await self.store.update(session_id, lambda s: s.mark_errored(message))
        except SessionNotFoundError:
            logger.warning("errored_session_already_gone session_id=%s", session_id)
            return
        self._count_transition(state_machine.ERRORED)
        logger.error("complete_failed session_id=%s error=%s", session_id, message)

    async def _mark_completed(self, session: PaymentSession, payment: OutgoingPaymentHandle) -> PaymentSession:
        """Record the sent payment. Once money moved the outcome is COMPLETED, even past the TTL."""

        now = self.clock()

        def complete(record: PaymentSession) -> None:
            record.mark_completed(payment, now, self.completion_grace)

        try:
            completed = await self.store.update(session.id, complete, ignore_expiry=True)
        except SessionNotFoundError:
            logger.error(
                "session_removed_after_payment session_id=%s outgoing_payment_id=%s", session.id, payment.id
            )
            completed = session.model_copy(deep=True)
            complete(completed)
        self._count_transition(state_machine.COMPLETED)
        logger.info("session_completed session_id=%s outgoing_payment_id=%s", session.id, payment.id)
        return completed

    async def cancel(self, session_id: str) -> CancelledSession:
        """Abandon a pending session and drop it from the store."""

        with bind_session(session_id):
            try:
                async with self.store.lock(session_id):
                    session = await self.store.get(session_id)
                    if session is None:
                        raise SessionNotFoundError(session_id)
                    if session.status != state_machine.PENDING_AUTHORIZATION:
                        raise InvalidStateError(f"cannot cancel a {session.status} session")
                    await self.store.update(session_id, lambda s: s.mark_cancelled())
                    await self.store.delete(session_id)
            except PaymentFlowError as exc:
                self._count_failure("cancel", exc)
                raise

            self._count_transition(state_machine.CANCELLED)
            logger.info("session_cancelled session_id=%s", session_id)
        return CancelledSession(session_id=session_id)

    async def get_status(self, session_id: str) -> SessionStatusView:
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return SessionStatusView(
            session_id=session.id,
            status=session.status,
            amount=session.amount,
            receiving_wallet=session.receiving_wallet_url,
            debit_amount=session.quote.debit_amount,
            created_at=session.created_at,
            completed_at=session.completed_at,
            error=session.last_error,
        )

    def uptime_seconds(self) -> float:
        return max(0.0, (self.clock() - self.started_at).total_seconds())

    async def stats(self) -> SessionStats:
        now: datetime = self.clock()
        live = [s for s in await self.store.list_all() if not s.is_expired(now)]
        by_status = {status: 0 for status in state_machine.SESSION_STATUSES}
        for session in live:
            by_status[session.status] = by_status.get(session.status, 0) + 1
        active_sessions.labels(service=self.service_name).set(len(live))
        return SessionStats(
            total_sessions=len(live),
            by_status=by_status,
            oldest_session=min((s.created_at for s in live), default=None),
            uptime_seconds=self.uptime_seconds(),
            timestamp=now,
        )


def build_orchestrator(config: CommonSettings) -> PaymentOrchestrator:
    """Wire the production orchestrator; credential problems abort startup."""

    if not config.wallet_address_url:
        raise InternalConfigError("WALLET_ADDRESS_URL is not configured")
    signer = load_request_signer(config.private_key_path, config.key_id)
    gateway = OpenPaymentsGateway(
        signer,
        config.wallet_address_url,
        timeout=config.gateway_timeout_seconds,
        service_name=config.service_name,
    )
    store = build_session_store(config.session_backend, config.redis_url, config.redis_key_prefix)
    return PaymentOrchestrator(
        gateway,
        store,
        config.wallet_address_url,
        max_amount=config.max_amount,
        session_ttl=timedelta(seconds=config.session_ttl_seconds),
        completion_grace=timedelta(seconds=config.completion_grace_seconds),
        service_name=config.service_name,
    )
