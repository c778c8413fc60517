"""Tests for the escrow service: transitions, ledger effects and queries."""

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal

import pytest

from escrow_errors import InsufficientFundsError, TransitionErrorKind, ValidationError
from escrow_service import DisputeDecision, EscrowService
from models import HistoryType

from tests.conftest import ADMIN, BUYER, OUTSIDER, SELLER, SUPPORT, RecordingNotifier, advance

TO_ACCEPTED = [("submit", BUYER), ("accept", SELLER)]
TO_DELIVERED = TO_ACCEPTED + [("fund", BUYER), ("start_work", SELLER), ("deliver", SELLER)]


async def balance(store, user_id):
    wallet = await store.get_wallet(user_id)
    return wallet.balance if wallet else None


async def history_of_type(store, transaction_id, history_type):
    entries = await store.get_transaction_history(transaction_id)
    return [entry for entry in entries if entry.type == history_type]


# ==================== Creation ====================

@pytest.mark.asyncio
async def test_create_transaction(draft, store):
    assert draft.id.startswith("ESC_")
    assert draft.status == "draft"
    assert draft.amount == Decimal("500.00")
    assert draft.terms == ["Two revisions", "Source files included"]

    entries = await store.get_transaction_history(draft.id)
    assert len(entries) == 1
    assert entries[0].type == HistoryType.STATUS_CHANGE


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"seller_id": BUYER},
    {"initiated_by": OUTSIDER},
    {"amount": "0"},
    {"amount": "-5"},
    {"amount": "abc"},
    {"amount": "9999999"},
    {"title": "   "},
    {"fees_responsibility": "nobody"},
])
async def test_create_transaction_rejects_invalid_input(service, overrides):
    fields = dict(title="Deal", buyer_id=BUYER, seller_id=SELLER, initiated_by=BUYER, amount="100")
    fields.update(overrides)
    with pytest.raises(ValidationError):
        await service.create_transaction(**fields)


# ==================== Lifecycle ====================

@pytest.mark.asyncio
async def test_walkthrough_with_forbidden_and_insufficient_funds(service, store):
    await store.create_wallet(BUYER, Decimal("50"))
    txn = await service.create_transaction(
        title="Deal", buyer_id=BUYER, seller_id=SELLER, initiated_by=BUYER, amount=100
    )

    result = await service.attempt_transition(txn.id, "submit", BUYER)
    assert result.success and result.transaction.status == "pending_approval"

    result = await service.attempt_transition(txn.id, "accept", BUYER)
    assert result.error == TransitionErrorKind.FORBIDDEN

    result = await service.attempt_transition(txn.id, "accept", SELLER)
    assert result.success and result.transaction.status == "accepted"

    result = await service.attempt_transition(txn.id, "fund", SELLER)
    assert result.error == TransitionErrorKind.FORBIDDEN

    result = await service.attempt_transition(txn.id, "fund", BUYER)
    assert result.error == TransitionErrorKind.INSUFFICIENT_FUNDS
    assert result.user_message == "Please add funds before paying."
    assert await balance(store, BUYER) == Decimal("50")
    assert (await store.load_transaction(txn.id)).status == "accepted"

    await service.deposit(BUYER, 100)
    result = await service.attempt_transition(txn.id, "fund", BUYER)
    assert result.success and result.transaction.status == "funded"
    assert await balance(store, BUYER) == Decimal("50.00")

    holds = await history_of_type(store, txn.id, HistoryType.ESCROW_HOLD)
    assert len(holds) == 1
    assert holds[0].amount == Decimal("-100.00")
    assert holds[0].balance_before == Decimal("150.00")
    assert holds[0].balance_after == Decimal("50.00")


@pytest.mark.asyncio
async def test_complete_releases_funds_to_seller(service, store, draft):
    await advance(service, draft.id, *TO_DELIVERED)
    result = await advance(service, draft.id, ("complete", BUYER))

    assert result.transaction.status == "completed"
    assert await balance(store, BUYER) == Decimal("500.00")
    assert await balance(store, SELLER) == Decimal("500.00")

    releases = await history_of_type(store, draft.id, HistoryType.ESCROW_RELEASE)
    assert len(releases) == 1
    assert releases[0].user_id == SELLER
    assert releases[0].amount == Decimal("500.00")


@pytest.mark.asyncio
async def test_status_changes_are_logged(service, store, draft):
    await advance(service, draft.id, *TO_ACCEPTED)
    changes = await history_of_type(store, draft.id, HistoryType.STATUS_CHANGE)
    assert [c.metadata.get("to") for c in changes] == ["draft", "pending_approval", "accepted"]
    assert changes[-1].metadata["from"] == "pending_approval"
    assert changes[-1].user_id == SELLER


@pytest.mark.asyncio
async def test_terminal_states_are_immutable(service, store, draft):
    await advance(service, draft.id, ("submit", BUYER), ("cancel", BUYER))

    for action, user_id in [("accept", SELLER), ("cancel", SELLER), ("submit", BUYER), ("complete", BUYER)]:
        result = await service.attempt_transition(draft.id, action, user_id)
        assert result.error == TransitionErrorKind.INVALID_TRANSITION
    assert (await store.load_transaction(draft.id)).status == "cancelled"


@pytest.mark.asyncio
async def test_repeating_a_transition_is_rejected(service, store, draft):
    await advance(service, draft.id, *TO_ACCEPTED, ("fund", BUYER))
    result = await service.attempt_transition(draft.id, "fund", BUYER)
    assert result.error == TransitionErrorKind.INVALID_TRANSITION
    assert await balance(store, BUYER) == Decimal("500.00")


@pytest.mark.asyncio
async def test_concurrent_funding_debits_once(service, store, draft):
    await advance(service, draft.id, *TO_ACCEPTED)

    results = await asyncio.gather(
        service.attempt_transition(draft.id, "fund", BUYER),
        service.attempt_transition(draft.id, "fund", BUYER),
    )

    assert sorted(r.success for r in results) == [False, True]
    failed = next(r for r in results if not r.success)
    assert failed.error == TransitionErrorKind.INVALID_TRANSITION
    assert await balance(store, BUYER) == Decimal("500.00")
    assert len(await history_of_type(store, draft.id, HistoryType.ESCROW_HOLD)) == 1


@pytest.mark.asyncio
async def test_unknown_transaction_and_action(service, draft):
    result = await service.attempt_transition("ESC_missing", "submit", BUYER)
    assert result.error == TransitionErrorKind.NOT_FOUND

    result = await service.attempt_transition(draft.id, "teleport", BUYER)
    assert result.error == TransitionErrorKind.INVALID_TRANSITION


@pytest.mark.asyncio
async def test_outsider_is_forbidden(service, draft):
    result = await service.attempt_transition(draft.id, "submit", OUTSIDER)
    assert result.error == TransitionErrorKind.FORBIDDEN
    assert result.user_message == "You cannot perform this action."


@pytest.mark.asyncio
async def test_dispute_requires_reason(service, store, draft):
    await advance(service, draft.id, *TO_DELIVERED)

    for payload in (None, {"reason": ""}, {"reason": "   "}):
        result = await service.attempt_transition(draft.id, "dispute", BUYER, payload)
        assert result.error == TransitionErrorKind.MISSING_REASON
    assert (await store.load_transaction(draft.id)).status == "delivered"

    result = await service.attempt_transition(draft.id, "dispute", BUYER, {"reason": "Wrong colours"})
    assert result.success and result.transaction.status == "disputed"

    changes = await history_of_type(store, draft.id, HistoryType.STATUS_CHANGE)
    assert changes[-1].metadata["dispute_reason"] == "Wrong colours"


@pytest.mark.asyncio
async def test_cancel_reason_is_recorded(service, store, draft):
    await advance(service, draft.id, ("submit", BUYER), ("cancel", SELLER, {"reason": "Too expensive"}))
    changes = await history_of_type(store, draft.id, HistoryType.STATUS_CHANGE)
    assert changes[-1].metadata["cancellation_reason"] == "Too expensive"


@pytest.mark.asyncio
async def test_datastore_failure_rolls_back(service, store, draft, monkeypatch):
    await advance(service, draft.id, *TO_ACCEPTED)
    original = store.unit_of_work

    @asynccontextmanager
    async def failing_unit_of_work():
        async with original() as uow:
            async def broken_save(*args, **kwargs):
                raise OSError("connection reset")
            uow.save_transaction = broken_save
            yield uow

    monkeypatch.setattr(store, "unit_of_work", failing_unit_of_work)
    result = await service.attempt_transition(draft.id, "fund", BUYER)

    assert result.error == TransitionErrorKind.UNAVAILABLE
    assert await balance(store, BUYER) == Decimal("1000.00")
    assert await history_of_type(store, draft.id, HistoryType.ESCROW_HOLD) == []
    assert (await store.load_transaction(draft.id)).status == "accepted"


# ==================== Notifications ====================

@pytest.mark.asyncio
async def test_transition_notifications(service, notifier, draft):
    await advance(service, draft.id, ("submit", BUYER))
    assert notifier.recipients() == [SELLER]
    assert notifier.sent[-1]["title"] == "Transaction Pending Approval"

    await advance(service, draft.id, ("accept", SELLER))
    assert notifier.recipients()[-1] == BUYER
    assert notifier.sent[-1]["title"] == "Payment Required"


@pytest.mark.asyncio
async def test_dispute_notifies_counterparty_and_support(service, notifier, draft):
    await advance(service, draft.id, *TO_DELIVERED)
    notifier.sent.clear()

    await advance(service, draft.id, ("dispute", BUYER, {"reason": "Late"}))
    assert notifier.recipients() == [SELLER, SUPPORT]
    assert BUYER not in notifier.recipients()


@pytest.mark.asyncio
async def test_notification_failure_does_not_undo_transition(store, config, draft):
    from notification_service import NotificationDispatcher

    failing = EscrowService(store, dispatcher=NotificationDispatcher(RecordingNotifier(fail=True)), config=config)
    result = await failing.attempt_transition(draft.id, "submit", BUYER)
    assert result.success
    assert (await store.load_transaction(draft.id)).status == "pending_approval"


@pytest.mark.asyncio
async def test_notifications_can_be_disabled(store, notifier, dispatcher, config, draft):
    config.enable_notifications = False
    quiet = EscrowService(store, dispatcher=dispatcher, config=config)
    await advance(quiet, draft.id, ("submit", BUYER))
    assert notifier.sent == []


# ==================== Dispute resolution ====================

@pytest.mark.asyncio
async def test_resolve_dispute_release_to_seller(service, store, draft):
    await advance(service, draft.id, *TO_DELIVERED, ("dispute", BUYER, {"reason": "Late"}))

    result = await service.resolve_dispute(draft.id, ADMIN, DisputeDecision.RELEASE_SELLER, "Delivered in full")
    assert result.success and result.transaction.status == "completed"
    assert await balance(store, SELLER) == Decimal("500.00")

    changes = await history_of_type(store, draft.id, HistoryType.STATUS_CHANGE)
    assert changes[-1].metadata["dispute_resolution"] == "release_seller"
    assert changes[-1].metadata["resolution_notes"] == "Delivered in full"


@pytest.mark.asyncio
async def test_resolve_dispute_refund_buyer(service, store, notifier, draft):
    await advance(service, draft.id, *TO_DELIVERED, ("dispute", BUYER, {"reason": "Late"}))
    notifier.sent.clear()

    result = await service.resolve_dispute(draft.id, ADMIN, "refund_buyer")
    assert result.success and result.transaction.status == "cancelled"
    assert await balance(store, BUYER) == Decimal("1000.00")
    assert await balance(store, SELLER) == Decimal("0")

    refunds = await history_of_type(store, draft.id, HistoryType.ESCROW_REFUND)
    assert len(refunds) == 1 and refunds[0].amount == Decimal("500.00")
    assert sorted(notifier.recipients()) == [BUYER, SELLER]


@pytest.mark.asyncio
async def test_resolve_requires_dispute(service, draft):
    await advance(service, draft.id, *TO_ACCEPTED)
    result = await service.resolve_dispute(draft.id, ADMIN, "release_seller")
    assert result.error == TransitionErrorKind.INVALID_TRANSITION

    result = await service.resolve_dispute(draft.id, ADMIN, "split_it")
    assert result.error == TransitionErrorKind.VALIDATION


# ==================== Queries ====================

@pytest.mark.asyncio
async def test_state_info_for_parties(service, draft):
    await advance(service, draft.id, ("submit", BUYER))

    view = await service.get_transaction_with_state_info(draft.id, SELLER)
    info = view["state_info"]
    assert info["role"] == "seller"
    assert info["is_seller"] and not info["is_initiator"]
    assert [a["action"] for a in info["available_actions"]] == ["accept", "cancel"]
    assert info["valid_next_states"] == ["accepted", "cancelled"]
    assert view["fees"]["fee"] == "7.50"


@pytest.mark.asyncio
async def test_state_info_hidden_from_outsiders(service, draft):
    from escrow_errors import NotFoundError

    with pytest.raises(NotFoundError):
        await service.get_transaction_with_state_info(draft.id, OUTSIDER)
    with pytest.raises(NotFoundError):
        await service.get_transaction_history(draft.id, OUTSIDER)


@pytest.mark.asyncio
async def test_user_transactions_filtered_by_status(service, draft):
    other = await service.create_transaction(
        title="Second", buyer_id=SELLER, seller_id=BUYER, initiated_by=SELLER, amount=20
    )
    await advance(service, draft.id, ("submit", BUYER))

    listed = await service.get_user_transactions(BUYER)
    assert {t["id"] for t in listed} == {draft.id, other.id}

    pending = await service.get_user_transactions(BUYER, status="Pending")
    assert [t["id"] for t in pending] == [draft.id]
    assert await service.get_user_transactions(OUTSIDER) == []


@pytest.mark.parametrize("responsibility,buyer_fee,seller_fee", [
    ("buyer", "1.50", "0.00"),
    ("seller", "0.00", "1.50"),
    ("split", "0.75", "0.75"),
])
def test_fee_breakdown(service, responsibility, buyer_fee, seller_fee):
    from models import Transaction

    txn = Transaction(
        id="ESC_FEE", buyer_id=BUYER, seller_id=SELLER, initiated_by=BUYER,
        amount="100", fees_responsibility=responsibility,
    )
    fees = service.fee_breakdown(txn)
    assert fees["fee"] == Decimal("1.50")
    assert fees["fee_percentage"] == "1.5%"
    assert fees["buyer_fee"] == Decimal(buyer_fee)
    assert fees["seller_fee"] == Decimal(seller_fee)
    assert fees["buyer_total"] == Decimal("100") + Decimal(buyer_fee)


# ==================== Wallets ====================

@pytest.mark.asyncio
async def test_deposit_and_withdraw(service, store):
    wallet = await service.deposit(OUTSIDER, "25.50")
    assert wallet.balance == Decimal("25.50")

    wallet = await service.withdraw(OUTSIDER, 10)
    assert wallet.balance == Decimal("15.50")

    with pytest.raises(InsufficientFundsError):
        await service.withdraw(OUTSIDER, 100)
    with pytest.raises(ValidationError):
        await service.deposit(OUTSIDER, 0)

    entries = await service.get_user_history(OUTSIDER)
    assert [e.type for e in entries] == [HistoryType.WITHDRAWAL, HistoryType.DEPOSIT]
    assert (await store.get_wallet(OUTSIDER)).balance == Decimal("15.50")


@pytest.mark.asyncio
async def test_notification_inbox(store, config, draft):
    from escrow_errors import NotFoundError
    from notification_service import NotificationDispatcher, StoreNotifier

    inbox_service = EscrowService(store, dispatcher=NotificationDispatcher(StoreNotifier(store)), config=config)
    await advance(inbox_service, draft.id, ("submit", BUYER), ("accept", SELLER))

    seller_inbox = await inbox_service.get_notifications(SELLER)
    assert [n.title for n in seller_inbox] == ["Transaction Pending Approval"]
    assert seller_inbox[0].transaction_id == draft.id

    await inbox_service.mark_notification_read(seller_inbox[0].id, SELLER)
    assert await inbox_service.get_notifications(SELLER, unread_only=True) == []

    with pytest.raises(NotFoundError):
        await inbox_service.mark_notification_read(seller_inbox[0].id, BUYER)

    assert await inbox_service.mark_all_notifications_read(BUYER) == 1
    assert await inbox_service.mark_all_notifications_read(BUYER) == 0


@pytest.mark.asyncio
async def test_concurrent_funding_from_one_wallet_never_overdraws(service, store, funded_wallets):
    deals = []
    for title in ("First", "Second"):
        txn = await service.create_transaction(
            title=title, buyer_id=BUYER, seller_id=SELLER, initiated_by=BUYER, amount=600
        )
        await advance(service, txn.id, *TO_ACCEPTED)
        deals.append(txn)

    results = await asyncio.gather(
        *(service.attempt_transition(txn.id, "fund", BUYER) for txn in deals)
    )

    assert sorted(r.success for r in results) == [False, True]
    assert next(r for r in results if not r.success).error == TransitionErrorKind.INSUFFICIENT_FUNDS
    assert await balance(store, BUYER) == Decimal("400.00")


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{"reason": 404}, {"reason": ["late"]}, ["late"], "late"])
async def test_malformed_payload_is_a_validation_result(service, store, draft, payload):
    await advance(service, draft.id, *TO_DELIVERED)

    result = await service.attempt_transition(draft.id, "dispute", BUYER, payload)
    assert not result.success
    assert result.error == TransitionErrorKind.VALIDATION
    assert (await store.load_transaction(draft.id)).status == "delivered"


@pytest.mark.asyncio
async def test_malformed_resolution_notes_is_a_validation_result(service, draft):
    await advance(service, draft.id, *TO_DELIVERED, ("dispute", BUYER, {"reason": "Late"}))

    result = await service.resolve_dispute(draft.id, ADMIN, "release_seller", notes=42)
    assert result.error == TransitionErrorKind.VALIDATION


@pytest.mark.asyncio
async def test_only_disputed_deals_reach_admin_resolution(service, draft):
    from transaction_states import ADMIN_STATES, TransactionState

    assert ADMIN_STATES == frozenset({TransactionState.DISPUTED})
    await advance(service, draft.id, *TO_DELIVERED)
    result = await service.resolve_dispute(draft.id, ADMIN, "refund_buyer")
    assert result.error == TransitionErrorKind.INVALID_TRANSITION


@pytest.mark.asyncio
async def test_funding_without_wallet_is_not_found(service, store):
    txn = await service.create_transaction(
        title="No wallet", buyer_id=OUTSIDER, seller_id=SELLER, initiated_by=OUTSIDER, amount=10
    )
    await advance(service, txn.id, ("submit", OUTSIDER), ("accept", SELLER))

    result = await service.attempt_transition(txn.id, "fund", OUTSIDER)
    assert result.error == TransitionErrorKind.NOT_FOUND
    assert "Transaction" not in result.message
    assert (await store.load_transaction(txn.id)).status == "accepted"
