"""Payment session lifecycle driven against the scripted gateway."""

import asyncio

import pytest

from ilppay.common import state_machine
from ilppay.common.errors import (
    GatewayError,
    GatewayTimeoutError,
    GrantError,
    InvalidStateError,
    SessionNotFoundError,
    ValidationError,
    WalletLookupError,
)
from ilppay.services.orchestrator.schemas import CompletedPayment

RECEIVER = "https://example.test/wallet-b"


@pytest.mark.asyncio
async def test_initiate_returns_pending_session_with_quote_debit_amount(orchestrator, store):
    initiated = await orchestrator.initiate(RECEIVER, 500)

    assert initiated.debit_amount.value == "505"
    assert initiated.amount == 500
    assert initiated.authorization_url.endswith("/interact/abc")
    assert initiated.continue_url.endswith("/continue/abc")

    session = await store.get(initiated.session_id)
    assert session is not None
    assert session.status == state_machine.PENDING_AUTHORIZATION
    assert session.quote.debit_amount.value == "505"


@pytest.mark.asyncio
async def test_initiate_then_complete_finishes_the_payment(orchestrator, gateway):
    initiated = await orchestrator.initiate(RECEIVER, 500)

    completed = await orchestrator.complete(initiated.session_id)

    assert completed.outgoing_payment.id.endswith("/outgoing-payments/op-1")
    assert completed.outgoing_payment.quote_id.endswith("/quotes/q-1")
    assert completed.summary.amount == 500
    assert completed.summary.debit_amount.value == "505"
    status = await orchestrator.get_status(initiated.session_id)
    assert status.status == state_machine.COMPLETED
    assert status.completed_at is not None
    assert gateway.outgoing_payments == 1


@pytest.mark.asyncio
async def test_initiate_runs_protocol_steps_in_order(orchestrator, gateway):
    await orchestrator.initiate(RECEIVER, 500)

    assert gateway.calls == [
        "get_wallet_address",
        "get_wallet_address",
        "request_grant:incoming-payment",
        "create_incoming_payment",
        "request_grant:quote",
        "create_quote",
        "request_grant:outgoing-payment",
    ]
    outgoing = gateway.grant_requests[-1]
    assert outgoing.interactive is True
    assert outgoing.limits == {"debitAmount": {"value": "505", "assetCode": "USD", "assetScale": 2}}
    assert outgoing.identifier == "https://wallet.example.test/alice"


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -1, 10_000_001, "abc", None, 1.5, True])
async def test_invalid_amount_is_rejected_before_any_gateway_call(orchestrator, gateway, store, amount):
    with pytest.raises(ValidationError):
        await orchestrator.initiate(RECEIVER, amount)

    assert gateway.calls == []
    assert await store.list_all() == []


@pytest.mark.asyncio
@pytest.mark.parametrize("url", ["http://example.test/wallet-b", "ftp://example.test/w", "not a url", ""])
async def test_non_https_wallet_is_rejected_without_network(orchestrator, gateway, url):
    with pytest.raises(ValidationError):
        await orchestrator.initiate(url, 500)

    assert gateway.calls == []


@pytest.mark.asyncio
async def test_validation_reports_every_broken_rule(orchestrator):
    with pytest.raises(ValidationError) as excinfo:
        await orchestrator.initiate("http://example.test/wallet-b", 0)

    assert excinfo.value.errors == [
        "receiving wallet URL must use https",
        "amount must be greater than 0",
    ]


@pytest.mark.asyncio
async def test_amount_at_the_maximum_and_numeric_strings_are_accepted(orchestrator):
    at_max = await orchestrator.initiate(RECEIVER, 10_000_000)
    from_string = await orchestrator.initiate(f"  {RECEIVER}  ", "250")

    assert at_max.amount == 10_000_000
    assert from_string.amount == 250
    assert from_string.receiving_wallet == RECEIVER


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "step, error",
    [
        ("get_wallet_address", WalletLookupError("no such wallet")),
        ("get_wallet_address", GatewayTimeoutError("timed out")),
        ("request_grant:incoming-payment", GrantError("not finalized")),
        ("create_incoming_payment", GatewayError("rejected")),
        ("request_grant:quote", GrantError("not finalized")),
        ("create_quote", GatewayError("rejected")),
        ("request_grant:outgoing-payment", GrantError("no interaction")),
    ],
)
async def test_failure_at_any_initiate_step_stores_no_session(orchestrator, gateway, store, step, error):
    gateway.fail_on[step] = error

    with pytest.raises(type(error)) as excinfo:
        await orchestrator.initiate(RECEIVER, 500)

    assert excinfo.value.kind == error.kind
    assert await store.list_all() == []


@pytest.mark.asyncio
async def test_identical_initiations_create_independent_sessions(orchestrator, store):
    first = await orchestrator.initiate(RECEIVER, 500)
    second = await orchestrator.initiate(RECEIVER, 500)

    assert first.session_id != second.session_id
    assert len(await store.list_all()) == 2


@pytest.mark.asyncio
async def test_complete_unknown_session_is_not_found(orchestrator):
    with pytest.raises(SessionNotFoundError):
        await orchestrator.complete("does-not-exist")


@pytest.mark.asyncio
async def test_concurrent_complete_creates_exactly_one_outgoing_payment(orchestrator, gateway):
    initiated = await orchestrator.initiate(RECEIVER, 500)
    gateway.delay = 0.01

    results = await asyncio.gather(
        orchestrator.complete(initiated.session_id),
        orchestrator.complete(initiated.session_id),
        return_exceptions=True,
    )

    completed = [r for r in results if isinstance(r, CompletedPayment)]
    rejected = [r for r in results if isinstance(r, InvalidStateError)]
    assert len(completed) == 1
    assert len(rejected) == 1
    assert gateway.outgoing_payments == 1


@pytest.mark.asyncio
async def test_unauthorized_grant_moves_session_to_errored(orchestrator, gateway):
    initiated = await orchestrator.initiate(RECEIVER, 500)
    gateway.continue_finalized = False

    with pytest.raises(GrantError):
        await orchestrator.complete(initiated.session_id)

    status = await orchestrator.get_status(initiated.session_id)
    assert status.status == state_machine.ERRORED
    assert status.error == "authorization not yet completed by the user"
    assert gateway.outgoing_payments == 0

    with pytest.raises(InvalidStateError):
        await orchestrator.complete(initiated.session_id)


@pytest.mark.asyncio
async def test_outgoing_payment_failure_is_recorded_on_the_session(orchestrator, gateway):
    initiated = await orchestrator.initiate(RECEIVER, 500)
    gateway.fail_on["create_outgoing_payment"] = GatewayError("insufficient funds")

    with pytest.raises(GatewayError):
        await orchestrator.complete(initiated.session_id)

    status = await orchestrator.get_status(initiated.session_id)
    assert status.status == state_machine.ERRORED
    assert status.error == "insufficient funds"


@pytest.mark.asyncio
async def test_cancel_pending_session_removes_it(orchestrator):
    initiated = await orchestrator.initiate(RECEIVER, 500)

    cancelled = await orchestrator.cancel(initiated.session_id)

    assert cancelled.session_id == initiated.session_id
    with pytest.raises(SessionNotFoundError):
        await orchestrator.get_status(initiated.session_id)


@pytest.mark.asyncio
async def test_cancel_completed_session_fails_and_leaves_it_untouched(orchestrator, store):
    initiated = await orchestrator.initiate(RECEIVER, 500)
    await orchestrator.complete(initiated.session_id)
    before = await store.get(initiated.session_id)

    with pytest.raises(InvalidStateError):
        await orchestrator.cancel(initiated.session_id)

    after = await store.get(initiated.session_id)
    assert after == before


@pytest.mark.asyncio
async def test_cancel_unknown_session_is_not_found(orchestrator):
    with pytest.raises(SessionNotFoundError):
        await orchestrator.cancel("missing")


@pytest.mark.asyncio
async def test_completed_session_stays_queryable_for_the_grace_period(orchestrator, clock):
    initiated = await orchestrator.initiate(RECEIVER, 500)
    await orchestrator.complete(initiated.session_id)

    clock.advance(minutes=4, seconds=59)
    assert (await orchestrator.get_status(initiated.session_id)).status == state_machine.COMPLETED

    clock.advance(seconds=1)
    with pytest.raises(SessionNotFoundError):
        await orchestrator.get_status(initiated.session_id)


@pytest.mark.asyncio
async def test_pending_session_expires_after_the_ttl(orchestrator, clock):
    initiated = await orchestrator.initiate(RECEIVER, 500)

    clock.advance(hours=1)

    with pytest.raises(SessionNotFoundError):
        await orchestrator.complete(initiated.session_id)


@pytest.mark.asyncio
async def test_stats_count_sessions_by_status(orchestrator):
    first = await orchestrator.initiate(RECEIVER, 500)
    await orchestrator.initiate(RECEIVER, 700)
    await orchestrator.complete(first.session_id)

    stats = await orchestrator.stats()

    assert stats.total_sessions == 2
    assert stats.by_status[state_machine.PENDING_AUTHORIZATION] == 1
    assert stats.by_status[state_machine.COMPLETED] == 1
    assert stats.by_status[state_machine.ERRORED] == 0
    assert stats.oldest_session is not None


@pytest.mark.asyncio
async def test_payment_sent_as_the_ttl_runs_out_still_completes(orchestrator, gateway, clock):
    initiated = await orchestrator.initiate(RECEIVER, 500)
    clock.advance(minutes=59, seconds=59)
    gateway.hooks["create_outgoing_payment"] = lambda: clock.advance(seconds=2)

    completed = await orchestrator.complete(initiated.session_id)

    assert isinstance(completed, CompletedPayment)
    assert completed.outgoing_payment.id.endswith("/outgoing-payments/op-1")
    assert completed.summary.completed_at == clock()
    assert gateway.outgoing_payments == 1


@pytest.mark.asyncio
async def test_payment_sent_after_the_record_was_swept_still_completes(orchestrator, gateway, store):
    initiated = await orchestrator.initiate(RECEIVER, 500)
    gateway.hooks["create_outgoing_payment"] = lambda: store.delete(initiated.session_id)

    completed = await orchestrator.complete(initiated.session_id)

    assert completed.session_id == initiated.session_id
    assert completed.summary.debit_amount.value == "505"
    assert gateway.outgoing_payments == 1


@pytest.mark.asyncio
async def test_both_wallet_lookups_settle_before_the_failure_surfaces(orchestrator, gateway, store):
    gateway.fail_on["get_wallet_address"] = WalletLookupError("unreachable")
    gateway.delay = 0.01

    with pytest.raises(WalletLookupError):
        await orchestrator.initiate(RECEIVER, 500)

    assert gateway.calls == ["get_wallet_address", "get_wallet_address"]
    assert await store.list_all() == []
