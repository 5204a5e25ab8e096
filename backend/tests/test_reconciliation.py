"""Tests for applying M-Pesa callbacks to pending transactions."""

import asyncio
import logging
from decimal import Decimal

import pytest

from betpulse.errors import TransactionNotFound
from betpulse.services.events import TRANSACTION_COMPLETED, TRANSACTION_REJECTED
from betpulse.services.reconciliation import CallbackOutcome

DEPOSIT_META = {"mpesa": {"status": "pending", "checkoutRequestId": "ws_CO_100", "msisdn": "258841234567"}}
WITHDRAWAL_META = {
    "mpesa": {
        "status": "processing",
        "msisdn": "258841234567",
        "conversationId": "AG_2024_7",
        "originatorConversationId": "orig-7",
    }
}


async def test_successful_deposit_credits_stored_amount(
    reconciliation, events, make_user, make_transaction, load_transaction, balance_of, stk_payload
):
    user = await make_user("10")
    tx = await make_transaction(user.id, amount="150", meta=DEPOSIT_META)

    outcome = await reconciliation.handle_collection_callback(stk_payload("ws_CO_100"))

    assert outcome is CallbackOutcome.APPLIED
    assert await balance_of(user.id) == Decimal("160")
    stored = await load_transaction(tx.id)
    assert stored.status == "completed"
    assert stored.meta["mpesa"]["status"] == "completed"
    assert stored.meta["mpesa"]["receipt"] == "NLJ7RT61SV"
    assert stored.meta["mpesa"]["msisdn"] == "258841234567"
    assert stored.meta["mpesa"]["payerPhone"] == 258841234567
    assert stored.meta["mpesa"]["checkoutRequestId"] == "ws_CO_100"
    assert events.types() == [TRANSACTION_COMPLETED]


async def test_duplicate_delivery_credits_once(
    reconciliation, events, make_user, make_transaction, load_transaction, balance_of, stk_payload
):
    user = await make_user("0")
    tx = await make_transaction(user.id, amount="150", meta=DEPOSIT_META)

    first = await reconciliation.handle_collection_callback(stk_payload("ws_CO_100"))
    second = await reconciliation.handle_collection_callback(stk_payload("ws_CO_100", receipt="OTHER"))

    assert first is CallbackOutcome.APPLIED
    assert second is CallbackOutcome.DUPLICATE
    assert await balance_of(user.id) == Decimal("150")
    assert (await load_transaction(tx.id)).meta["mpesa"]["receipt"] == "NLJ7RT61SV"
    assert events.types() == [TRANSACTION_COMPLETED]


async def test_concurrent_deliveries_credit_once(
    reconciliation, make_user, make_transaction, balance_of, stk_payload
):
    user = await make_user("0")
    await make_transaction(user.id, amount="150", meta=DEPOSIT_META)

    outcomes = await asyncio.gather(
        *[reconciliation.handle_collection_callback(stk_payload("ws_CO_100")) for _ in range(3)]
    )

    assert sorted(o.value for o in outcomes) == ["applied", "duplicate", "duplicate"]
    assert await balance_of(user.id) == Decimal("150")


async def test_reported_amount_mismatch_credits_stored_amount(
    reconciliation, make_user, make_transaction, balance_of, stk_payload, caplog
):
    user = await make_user("0")
    await make_transaction(user.id, amount="150", meta=DEPOSIT_META)

    with caplog.at_level(logging.WARNING, logger="betpulse.services.reconciliation"):
        outcome = await reconciliation.handle_collection_callback(stk_payload("ws_CO_100", amount=999))

    assert outcome is CallbackOutcome.APPLIED
    assert await balance_of(user.id) == Decimal("150")
    assert any("999" in record.getMessage() for record in caplog.records)


async def test_failed_collection_rejects_without_credit(
    reconciliation, events, make_user, make_transaction, load_transaction, balance_of, stk_payload
):
    user = await make_user("5")
    tx = await make_transaction(user.id, amount="150", meta=DEPOSIT_META)

    outcome = await reconciliation.handle_collection_callback(stk_payload("ws_CO_100", result_code=1032))

    assert outcome is CallbackOutcome.APPLIED
    assert await balance_of(user.id) == Decimal("5")
    stored = await load_transaction(tx.id)
    assert stored.status == "rejected"
    assert stored.meta["reason"] == "Request cancelled by user"
    assert stored.meta["mpesa"]["status"] == "failed"
    assert stored.meta["mpesa"]["resultCode"] == 1032
    assert events.types() == [TRANSACTION_REJECTED]


async def test_unknown_checkout_id_is_acknowledged(reconciliation, events, make_user, balance_of, stk_payload):
    user = await make_user("5")

    outcome = await reconciliation.handle_collection_callback(stk_payload("ws_CO_unknown"))

    assert outcome is CallbackOutcome.UNRECOGNIZED
    assert await balance_of(user.id) == Decimal("5")
    assert events.events == []


@pytest.mark.parametrize(
    "payload",
    [
        None,
        {},
        {"Body": {}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_100", "ResultCode": "not-a-number"}}},
        ["not", "an", "object"],
    ],
)
async def test_malformed_collection_callbacks(
    reconciliation, make_user, make_transaction, load_transaction, balance_of, payload
):
    user = await make_user("0")
    tx = await make_transaction(user.id, amount="150", meta=DEPOSIT_META)

    outcome = await reconciliation.handle_collection_callback(payload)

    assert outcome is CallbackOutcome.MALFORMED
    assert (await load_transaction(tx.id)).status == "pending"
    assert await balance_of(user.id) == Decimal("0")


async def test_failed_disbursement_refunds_once(
    reconciliation, events, make_user, make_transaction, load_transaction, balance_of, b2c_payload
):
    """A 200 withdrawal already reserved from a 500 balance is refunded exactly once."""
    user = await make_user("300")
    tx = await make_transaction(user.id, type="withdrawal", amount="200", meta=WITHDRAWAL_META)

    first = await reconciliation.handle_disbursement_callback(b2c_payload("AG_2024_7", result_code=2001))
    second = await reconciliation.handle_disbursement_callback(b2c_payload("AG_2024_7", result_code=2001))

    assert (first, second) == (CallbackOutcome.APPLIED, CallbackOutcome.DUPLICATE)
    assert await balance_of(user.id) == Decimal("500")
    stored = await load_transaction(tx.id)
    assert stored.status == "rejected"
    assert stored.meta["mpesa"]["status"] == "failed"
    assert stored.meta["reason"] == "The balance is insufficient for the transaction."
    assert events.types() == [TRANSACTION_REJECTED]


async def test_successful_disbursement_completes_without_balance_change(
    reconciliation, make_user, make_transaction, load_transaction, balance_of, b2c_payload
):
    user = await make_user("300")
    tx = await make_transaction(user.id, type="withdrawal", amount="200", meta=WITHDRAWAL_META)

    outcome = await reconciliation.handle_disbursement_callback(b2c_payload("AG_2024_7"))

    assert outcome is CallbackOutcome.APPLIED
    assert await balance_of(user.id) == Decimal("300")
    stored = await load_transaction(tx.id)
    assert stored.status == "completed"
    assert stored.meta["mpesa"]["status"] == "paid"
    assert stored.meta["mpesa"]["payoutAmount"] == 200
    assert stored.meta["mpesa"]["receiver"] == "258841234567 - Jane Doe"
    assert stored.meta["mpesa"]["transactionId"] == "NLJ41HAY6Q"


async def test_disbursement_matched_by_originator_conversation_id(
    reconciliation, make_user, make_transaction, load_transaction, b2c_payload
):
    user = await make_user("0")
    tx = await make_transaction(user.id, type="withdrawal", amount="200", meta=WITHDRAWAL_META)

    outcome = await reconciliation.handle_disbursement_callback(
        b2c_payload("AG_unknown", originator_conversation_id="orig-7")
    )

    assert outcome is CallbackOutcome.APPLIED
    assert (await load_transaction(tx.id)).status == "completed"


async def test_single_result_parameter_object(reconciliation, make_user, make_transaction, load_transaction, b2c_payload):
    user = await make_user("0")
    tx = await make_transaction(user.id, type="withdrawal", amount="200", meta=WITHDRAWAL_META)
    payload = b2c_payload("AG_2024_7")
    payload["Result"]["ResultParameters"]["ResultParameter"] = {"Key": "TransactionAmount", "Value": 200}

    outcome = await reconciliation.handle_disbursement_callback(payload)

    assert outcome is CallbackOutcome.APPLIED
    assert (await load_transaction(tx.id)).meta["mpesa"]["payoutAmount"] == 200


async def test_unknown_and_malformed_disbursements(reconciliation, b2c_payload):
    assert await reconciliation.handle_disbursement_callback(b2c_payload("AG_nobody")) is CallbackOutcome.UNRECOGNIZED
    assert await reconciliation.handle_disbursement_callback({"Result": {}}) is CallbackOutcome.MALFORMED
    assert await reconciliation.handle_disbursement_callback("garbage") is CallbackOutcome.MALFORMED


async def test_timeout_is_recorded_and_left_pending(
    reconciliation, make_user, make_transaction, load_transaction, balance_of
):
    user = await make_user("300")
    tx = await make_transaction(user.id, type="withdrawal", amount="200", meta=WITHDRAWAL_META)
    payload = {
        "Result": {
            "ConversationID": "AG_2024_7",
            "OriginatorConversationID": "orig-7",
            "ResultCode": 1,
            "ResultDesc": "The service request timed out.",
        }
    }

    outcome = await reconciliation.handle_disbursement_timeout(payload)

    assert outcome is CallbackOutcome.RECORDED
    assert await balance_of(user.id) == Decimal("300")
    stored = await load_transaction(tx.id)
    assert stored.status == "pending"
    assert stored.meta["mpesa"]["status"] == "timeout"
    assert stored.meta["mpesa"]["conversationId"] == "AG_2024_7"


async def test_timeout_for_unknown_conversation(reconciliation):
    payload = {"Result": {"ConversationID": "AG_nobody", "OriginatorConversationID": "orig-nobody"}}

    assert await reconciliation.handle_disbursement_timeout(payload) is CallbackOutcome.UNRECOGNIZED
    assert await reconciliation.handle_disbursement_timeout({}) is CallbackOutcome.MALFORMED


async def test_mark_completed_is_idempotent(reconciliation, make_user, make_transaction, balance_of):
    user = await make_user("0")
    tx = await make_transaction(user.id, amount="75")

    results = await asyncio.gather(*[reconciliation.mark_completed(tx.id) for _ in range(3)])

    assert sorted(results) == [False, False, True]
    assert await balance_of(user.id) == Decimal("75")


async def test_mark_rejected_refunds_withdrawal_only(
    reconciliation, make_user, make_transaction, load_transaction, balance_of
):
    user = await make_user("0")
    deposit = await make_transaction(user.id, amount="75")
    withdrawal = await make_transaction(user.id, type="withdrawal", amount="40")

    assert await reconciliation.mark_rejected(deposit.id, "Customer cancelled") is True
    assert await balance_of(user.id) == Decimal("0")
    assert await reconciliation.mark_rejected(withdrawal.id, "Payout refused") is True
    assert await balance_of(user.id) == Decimal("40")
    assert (await load_transaction(withdrawal.id)).meta == {"reason": "Payout refused"}

    assert await reconciliation.mark_completed(withdrawal.id) is False


async def test_mark_unknown_transaction(reconciliation):
    with pytest.raises(TransactionNotFound):
        await reconciliation.mark_completed("missing")
