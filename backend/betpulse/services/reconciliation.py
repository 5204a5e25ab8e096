"""Merges M-Pesa callbacks into pending transactions and applies balance effects once.

A transaction leaves ``pending`` through a conditional status update; only the
caller whose update matched a row applies the balance effect, in the same
database transaction. Duplicate, late or concurrent deliveries therefore never
credit twice.

Callbacks that reference an unknown correlation id, or that cannot be parsed,
are acknowledged without side effects: the provider runs its own retry policy
and must not be driven to exhaustion by payloads we will never accept.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from betpulse.errors import TransactionNotFound
from betpulse.models import Transaction
from betpulse.models.transaction import COMPLETED, DEPOSIT, PENDING, REJECTED, WITHDRAWAL
from betpulse.repositories import TransactionRepository
from betpulse.schemas import CollectionCallback, DisbursementCallback, DisbursementTimeoutCallback
from betpulse.services.events import TRANSACTION_COMPLETED, TRANSACTION_REJECTED, EventBus
from betpulse.services.ledger import LedgerGuard
from betpulse.services.metadata import CollectionResult, DisbursementResult, MpesaPatch

logger = logging.getLogger(__name__)

SUCCESS_RESULT_CODE = 0


class CallbackOutcome(str, Enum):
    APPLIED = "applied"            # terminal transition and balance effect committed
    RECORDED = "recorded"          # metadata updated, no transition
    DUPLICATE = "duplicate"        # transaction already terminal
    UNRECOGNIZED = "unrecognized"  # no transaction for the correlation id
    MALFORMED = "malformed"        # payload failed validation


class ReconciliationService:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], events: EventBus):
        self._sessions = session_factory
        self._events = events

    async def handle_collection_callback(self, payload: Any) -> CallbackOutcome:
        """Apply an STK push result to the matching deposit."""
        try:
            callback = CollectionCallback.model_validate(payload).body.stk_callback
        except ValidationError as e:
            logger.warning(f"Malformed collection callback ignored: {e.error_count()} validation errors")
            return CallbackOutcome.MALFORMED

        success = callback.result_code == SUCCESS_RESULT_CODE
        items = callback.metadata_items()
        patch = CollectionResult(
            status="completed" if success else "failed",
            checkoutRequestId=callback.checkout_request_id,
            merchantRequestId=callback.merchant_request_id,
            resultCode=callback.result_code,
            resultDescription=callback.result_desc,
            receipt=items.get("MpesaReceiptNumber"),
            amount=items.get("Amount"),
            transactionDate=items.get("TransactionDate"),
            payerPhone=items.get("PhoneNumber"),
        )

        async with self._sessions() as session, session.begin():
            repo = TransactionRepository(session)
            tx = await repo.find_by_checkout_id(callback.checkout_request_id, for_update=True)
            if tx is None:
                logger.warning("Collection callback for unknown checkout request acknowledged")
                return CallbackOutcome.UNRECOGNIZED
            if success:
                self._check_reported_amount(tx, items.get("Amount"))
            outcome, applied = await self._apply(session, tx, patch, success, callback.result_desc)

        await self._announce(applied)
        return outcome

    async def handle_disbursement_callback(self, payload: Any) -> CallbackOutcome:
        """Apply a B2C result to the matching withdrawal."""
        try:
            result = DisbursementCallback.model_validate(payload).result
        except ValidationError as e:
            logger.warning(f"Malformed disbursement callback ignored: {e.error_count()} validation errors")
            return CallbackOutcome.MALFORMED

        success = result.result_code == SUCCESS_RESULT_CODE
        parameters = result.parameters()
        patch = DisbursementResult(
            status="paid" if success else "failed",
            conversationId=result.conversation_id,
            originatorConversationId=result.originator_conversation_id,
            resultCode=result.result_code,
            resultDescription=result.result_desc,
            transactionId=result.transaction_id,
            payoutAmount=parameters.get("TransactionAmount"),
            receiver=parameters.get("ReceiverPartyPublicName"),
            completedAt=datetime.now(timezone.utc).isoformat(),
        )

        async with self._sessions() as session, session.begin():
            tx = await self._find_disbursement(session, result.conversation_id, result.originator_conversation_id)
            if tx is None:
                logger.warning("Disbursement result for unknown conversation acknowledged")
                return CallbackOutcome.UNRECOGNIZED
            outcome, applied = await self._apply(session, tx, patch, success, result.result_desc)

        await self._announce(applied)
        return outcome

    async def handle_disbursement_timeout(self, payload: Any) -> CallbackOutcome:
        """Record a queue timeout. The withdrawal stays pending and may be dispatched again."""
        try:
            result = DisbursementTimeoutCallback.model_validate(payload).result
        except ValidationError as e:
            logger.warning(f"Malformed disbursement timeout ignored: {e.error_count()} validation errors")
            return CallbackOutcome.MALFORMED

        async with self._sessions() as session, session.begin():
            tx = await self._find_disbursement(session, result.conversation_id, result.originator_conversation_id)
            if tx is None:
                logger.warning("Disbursement timeout for unknown conversation acknowledged")
                return CallbackOutcome.UNRECOGNIZED
            if tx.status != PENDING:
                return CallbackOutcome.DUPLICATE
            patch = DisbursementResult(
                status="timeout",
                resultCode=result.result_code,
                resultDescription=result.result_desc or "Request timed out in provider queue",
            )
            await TransactionRepository(session).merge_metadata(tx, patch.as_patch())
        logger.warning(f"Disbursement for {tx.reference} timed out at provider; left pending")
        return CallbackOutcome.RECORDED

    async def mark_completed(self, transaction_id: str) -> bool:
        """Complete a pending transaction. Returns False if it was already terminal."""
        return await self._mark(transaction_id, success=True, reason=None)

    async def mark_rejected(self, transaction_id: str, reason: Optional[str] = None) -> bool:
        """Reject a pending transaction, refunding withdrawals. Returns False if already terminal."""
        return await self._mark(transaction_id, success=False, reason=reason)

    async def _mark(self, transaction_id: str, success: bool, reason: Optional[str]) -> bool:
        async with self._sessions() as session, session.begin():
            tx = await TransactionRepository(session).find_by_id(transaction_id, for_update=True)
            if tx is None:
                raise TransactionNotFound()
            outcome, applied = await self._apply(session, tx, None, success, reason)
        await self._announce(applied)
        return outcome is CallbackOutcome.APPLIED

    async def _find_disbursement(
        self, session: AsyncSession, conversation_id: str, originator_conversation_id: str
    ) -> Optional[Transaction]:
        repo = TransactionRepository(session)
        tx = await repo.find_by_conversation_id(conversation_id, for_update=True)
        if tx is None and originator_conversation_id != conversation_id:
            tx = await repo.find_by_conversation_id(originator_conversation_id, for_update=True)
        return tx

    async def _apply(
        self,
        session: AsyncSession,
        tx: Transaction,
        patch: Optional[MpesaPatch],
        success: bool,
        reason: Optional[str],
    ) -> Tuple[CallbackOutcome, Optional[Dict[str, Any]]]:
        """Merge ``patch`` and move ``tx`` to its terminal status exactly once."""
        if tx.status != PENDING:
            logger.info(f"Transaction {tx.reference} already {tx.status}; callback is a no-op")
            return CallbackOutcome.DUPLICATE, None

        repo = TransactionRepository(session)
        merged: Dict[str, Any] = patch.as_patch() if patch else {}
        if not success and reason:
            merged["reason"] = reason
        if merged:
            await repo.merge_metadata(tx, merged)

        new_status = COMPLETED if success else REJECTED
        if not await repo.compare_and_set_status(tx.id, PENDING, new_status):
            # Lost the race to a concurrent delivery that already settled it
            logger.info(f"Transaction {tx.reference} settled concurrently; callback is a no-op")
            return CallbackOutcome.DUPLICATE, None

        ledger = LedgerGuard(session)
        if success and tx.type == DEPOSIT:
            await ledger.credit(tx.user_id, tx.amount)
        elif not success and tx.type == WITHDRAWAL:
            await ledger.credit(tx.user_id, tx.amount)

        logger.info(f"Transaction {tx.reference} ({tx.type}) {new_status}")
        event = {
            "type": TRANSACTION_COMPLETED if success else TRANSACTION_REJECTED,
            "payload": {
                "transaction_id": tx.id,
                "user_id": tx.user_id,
                "type": tx.type,
                "amount": tx.amount,
                "status": new_status,
            },
        }
        return CallbackOutcome.APPLIED, event

    def _check_reported_amount(self, tx: Transaction, reported: Any) -> None:
        # The stored amount is what gets credited; the callback amount is only recorded
        if reported is None:
            return
        try:
            matches = Decimal(str(reported)) == tx.amount
        except InvalidOperation:
            matches = False
        if not matches:
            logger.warning(
                f"Deposit {tx.reference} callback reports amount {reported}, "
                f"crediting stored amount {tx.amount}"
            )

    async def _announce(self, event: Optional[Dict[str, Any]]) -> None:
        if event:
            await self._events.publish(event["type"], event["payload"])
