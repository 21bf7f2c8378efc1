"""Shared fixtures: a scripted gateway, a controllable clock and session builders."""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from ilppay.common import state_machine
from ilppay.common.errors import GrantError
from ilppay.services.gateway.client import PaymentGateway
from ilppay.services.gateway.models import (
    AccessSpec,
    Amount,
    GrantResult,
    IncomingPaymentHandle,
    OutgoingPaymentHandle,
    QuoteHandle,
    WalletHandle,
)
from ilppay.services.orchestrator.service import PaymentOrchestrator
from ilppay.services.sessions.models import PaymentSession, PendingGrant
from ilppay.services.sessions.store import InMemorySessionStore

SENDING_WALLET = "https://wallet.example.test/alice"
RECEIVING_WALLET = "https://example.test/wallet-b"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class StubGateway(PaymentGateway):
    """In-process stand-in for the Open Payments network.

    Every call is recorded in `calls`; `fail_on[name] = exc` makes that step raise
    and `hooks[name]` runs (and is awaited if it returns a coroutine) before it.
    """

    def __init__(self, debit_value: str = "505") -> None:
        self.debit_value = debit_value
        self.calls: list[str] = []
        self.fail_on: dict[str, Exception] = {}
        self.grant_requests: list[AccessSpec] = []
        self.continue_finalized = True
        self.outgoing_payments = 0
        self.delay = 0.0
        self.hooks: dict[str, Callable[[], Any]] = {}

    async def _step(self, name: str) -> None:
        self.calls.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if name in self.hooks:
            result = self.hooks[name]()
            if asyncio.iscoroutine(result):
                await result
        if name in self.fail_on:
            raise self.fail_on[name]

    async def get_wallet_address(self, url: str) -> WalletHandle:
        await self._step("get_wallet_address")
        return WalletHandle(
            id=url,
            auth_server=f"{url}/auth",
            resource_server=f"{url}/resources",
            asset_code="USD",
            asset_scale=2,
        )

    async def request_grant(self, auth_server_url: str, access: AccessSpec) -> GrantResult:
        await self._step(f"request_grant:{access.type}")
        self.grant_requests.append(access)
        if access.interactive:
            return GrantResult(
                continue_uri=f"{auth_server_url}/continue/abc",
                continue_access_token="continue-token",
                redirect_url=f"{auth_server_url}/interact/abc",
            )
        return GrantResult(access_token=f"{access.type}-token")

    async def continue_grant(self, continue_uri: str, continue_access_token: str) -> GrantResult:
        await self._step("continue_grant")
        if not self.continue_finalized:
            raise GrantError("authorization not yet completed by the user")
        return GrantResult(access_token="outgoing-payment-token")

    async def create_incoming_payment(
        self, resource_server_url, access_token, wallet_id, amount, asset_code, asset_scale
    ) -> IncomingPaymentHandle:
        await self._step("create_incoming_payment")
        return IncomingPaymentHandle(
            id=f"{resource_server_url}/incoming-payments/ip-1",
            wallet_address=wallet_id,
            incoming_amount=Amount(value=str(amount), asset_code=asset_code, asset_scale=asset_scale),
        )

    async def create_quote(self, resource_server_url, access_token, wallet_id, receiver, method="ilp") -> QuoteHandle:
        await self._step("create_quote")
        return QuoteHandle(
            id=f"{resource_server_url}/quotes/q-1",
            wallet_address=wallet_id,
            receiver=receiver,
            debit_amount=Amount(value=self.debit_value, asset_code="USD", asset_scale=2),
            receive_amount=Amount(value="500", asset_code="USD", asset_scale=2),
        )

    async def create_outgoing_payment(self, resource_server_url, access_token, wallet_id, quote_id) -> OutgoingPaymentHandle:
        await self._step("create_outgoing_payment")
        self.outgoing_payments += 1
        return OutgoingPaymentHandle(
            id=f"{resource_server_url}/outgoing-payments/op-{self.outgoing_payments}",
            wallet_address=wallet_id,
            quote_id=quote_id,
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def store(clock: FakeClock) -> InMemorySessionStore:
    return InMemorySessionStore(clock=clock)


@pytest.fixture
def orchestrator(gateway: StubGateway, store: InMemorySessionStore, clock: FakeClock) -> PaymentOrchestrator:
    return PaymentOrchestrator(gateway, store, SENDING_WALLET, clock=clock)


@pytest.fixture
def make_session(clock: FakeClock):
    """Build a stored-shape session directly, bypassing the gateway."""

    counter = {"n": 0}

    def _make(status: str = state_machine.PENDING_AUTHORIZATION, ttl: timedelta = timedelta(hours=1)) -> PaymentSession:
        counter["n"] += 1
        wallet = WalletHandle(
            id=SENDING_WALLET,
            auth_server=f"{SENDING_WALLET}/auth",
            resource_server=f"{SENDING_WALLET}/resources",
            asset_code="USD",
            asset_scale=2,
        )
        amount = Amount(value="100", asset_code="USD", asset_scale=2)
        return PaymentSession(
            id=f"session-{counter['n']}",
            status=status,
            created_at=clock(),
            expires_at=clock() + ttl,
            amount=100,
            receiving_wallet_url=RECEIVING_WALLET,
            sending_wallet=wallet,
            receiving_wallet=wallet,
            incoming_payment=IncomingPaymentHandle(id="ip-1", wallet_address=RECEIVING_WALLET),
            quote=QuoteHandle(
                id="q-1",
                wallet_address=SENDING_WALLET,
                receiver="ip-1",
                debit_amount=amount,
                receive_amount=amount,
            ),
            outgoing_grant=PendingGrant(continue_uri="https://auth/continue", continue_access_token="t"),
        )

    return _make
