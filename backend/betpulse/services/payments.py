"""Outbound M-Pesa operations: deposit prompts, withdrawal requests and payouts.

None of these set a transaction's terminal status on success. Final
``completed``/``rejected`` transitions belong to the reconciliation service,
which acts on the provider's asynchronous callbacks. The only terminal write
here is the synchronous rejection of a deposit whose prompt could not be sent.
"""

import logging
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from betpulse.errors import (
    InvalidArgument,
    InvalidState,
    MissingDestination,
    ProviderError,
    TransactionNotFound,
    UserNotFound,
)
from betpulse.models import Transaction
from betpulse.models.transaction import DEPOSIT, PENDING, REJECTED, WITHDRAWAL
from betpulse.repositories import TransactionRepository, UserRepository
from betpulse.services.events import TRANSACTION_REJECTED, WITHDRAWAL_DISPATCHED, EventBus
from betpulse.services.ledger import LedgerGuard, to_cents
from betpulse.services.metadata import (
    CollectionRequested,
    DestinationPatch,
    DisbursementDispatched,
)
from betpulse.services.mpesa import MpesaClient, format_international_msisdn, normalize_msisdn

logger = logging.getLogger(__name__)

CHANNEL_MPESA = "MPESA"

# metadata.mpesa.status values owned by this module
STATUS_INITIATED = "initiated"
STATUS_PENDING = "pending"
STATUS_DISPATCHING = "dispatching"
STATUS_PROCESSING = "processing"
STATUS_DISPATCH_FAILED = "dispatch_failed"
IN_FLIGHT_STATUSES = frozenset({STATUS_DISPATCHING, STATUS_PROCESSING})


def generate_reference(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


@dataclass
class PayoutDispatch:
    conversation_id: str
    originator_conversation_id: str
    description: Optional[str]


class PaymentService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        mpesa: MpesaClient,
        events: EventBus,
    ):
        self._sessions = session_factory
        self._mpesa = mpesa
        self._events = events

    @property
    def _country_code(self) -> str:
        return self._mpesa.config.country_code

    def _destination(self, phone_number: str) -> DestinationPatch:
        msisdn = normalize_msisdn(phone_number, self._country_code)
        if not msisdn:
            raise InvalidArgument("Invalid M-Pesa number.")
        return DestinationPatch(
            msisdn=msisdn,
            displayPhone=format_international_msisdn(phone_number, self._country_code),
        )

    async def list_user_transactions(self, user_id: str, limit: int = 100) -> List[Transaction]:
        async with self._sessions() as session:
            return await TransactionRepository(session).list_by_user(user_id, limit)

    async def initiate_deposit(self, user_id: str, amount: Decimal, phone_number: str) -> Transaction:
        """Create a pending deposit and prompt the customer's phone.

        Raises:
            ProviderError: the prompt could not be sent; the deposit has
                already been marked ``rejected``.
        """
        amount = to_cents(amount)
        destination = self._destination(phone_number)

        async with self._sessions() as session, session.begin():
            if await UserRepository(session).find_by_id(user_id) is None:
                raise UserNotFound()
            destination.status = STATUS_INITIATED
            tx = await TransactionRepository(session).create(
                user_id=user_id,
                type=DEPOSIT,
                amount=amount,
                status=PENDING,
                reference=generate_reference("DEP"),
                channel=CHANNEL_MPESA,
                meta=destination.as_patch(),
            )

        try:
            request = await self._mpesa.request_collection(
                amount=amount,
                phone_number=destination.msisdn,
                reference=tx.reference,
                description="BetPulse top-up",
            )
        except ProviderError as e:
            await self._reject_deposit(tx.id, e.detail)
            raise

        patch = CollectionRequested(
            status=STATUS_PENDING,
            msisdn=destination.msisdn,
            displayPhone=destination.displayPhone,
            merchantRequestId=request.merchant_request_id,
            checkoutRequestId=request.checkout_request_id,
            customerMessage=request.customer_message,
        )
        async with self._sessions() as session, session.begin():
            repo = TransactionRepository(session)
            tx = await repo.find_by_id(tx.id, for_update=True)
            await repo.merge_metadata(tx, patch.as_patch())
        logger.info(f"Deposit {tx.reference} awaiting customer confirmation")
        return tx

    async def _reject_deposit(self, tx_id: str, detail: str) -> None:
        async with self._sessions() as session, session.begin():
            repo = TransactionRepository(session)
            tx = await repo.find_by_id(tx_id, for_update=True)
            await repo.merge_metadata(
                tx, {"reason": "STK push could not be initiated", "mpesa": {"status": "failed", "lastError": detail}}
            )
            rejected = await repo.compare_and_set_status(tx_id, PENDING, REJECTED)
        if rejected:
            logger.warning(f"Deposit {tx.reference} rejected: {detail}")
            await self._events.publish(
                TRANSACTION_REJECTED,
                {"transaction_id": tx_id, "user_id": tx.user_id, "type": DEPOSIT, "amount": tx.amount},
            )

    async def request_withdrawal(self, user_id: str, amount: Decimal, phone_number: str) -> Transaction:
        """Reserve ``amount`` from the balance and queue a pending withdrawal for approval."""
        amount = to_cents(amount)
        destination = self._destination(phone_number)
        destination.status = STATUS_PENDING

        async with self._sessions() as session, session.begin():
            await LedgerGuard(session).debit(user_id, amount)
            tx = await TransactionRepository(session).create(
                user_id=user_id,
                type=WITHDRAWAL,
                amount=amount,
                status=PENDING,
                reference=generate_reference("WDL"),
                channel=CHANNEL_MPESA,
                meta=destination.as_patch(),
            )
        logger.info(f"Withdrawal {tx.reference} of {amount} queued for approval")
        return tx

    async def _claim_for_dispatch(self, transaction_id: str) -> Transaction:
        async with self._sessions() as session, session.begin():
            repo = TransactionRepository(session)
            tx = await repo.find_by_id(transaction_id, for_update=True)
            if tx is None:
                raise TransactionNotFound()
            if tx.type != WITHDRAWAL:
                raise InvalidState("Only withdrawals can be paid out.")
            if tx.status != PENDING:
                raise InvalidState("Transaction has already been processed.")
            mpesa = tx.mpesa
            if mpesa.get("status") in IN_FLIGHT_STATUSES:
                raise InvalidState("Payout is already in progress.")
            if not (mpesa.get("msisdn") or mpesa.get("phoneNumber")):
                raise MissingDestination()
            await repo.merge_metadata(tx, DisbursementDispatched(status=STATUS_DISPATCHING).as_patch())
        return tx

    async def initiate_withdrawal_payout(self, transaction_id: str, remarks: Optional[str] = None) -> PayoutDispatch:
        """Send an approved withdrawal to the provider for disbursement.

        Raises:
            TransactionNotFound: unknown transaction.
            InvalidState: not a pending withdrawal, or already dispatched.
            MissingDestination: no M-Pesa number recorded on the transaction.
            ProviderError: the request failed; metadata records
                ``dispatch_failed`` and the withdrawal stays pending.
        """
        tx = await self._claim_for_dispatch(transaction_id)
        msisdn = tx.mpesa.get("msisdn") or tx.mpesa.get("phoneNumber")

        try:
            response = await self._mpesa.request_disbursement(
                amount=tx.amount,
                phone_number=msisdn,
                reference=tx.reference,
                remarks=remarks,
            )
            patch = DisbursementDispatched(
                status=STATUS_PROCESSING,
                msisdn=msisdn,
                conversationId=response.conversation_id,
                originatorConversationId=response.originator_conversation_id,
                responseDescription=response.response_description,
            )
        except (ProviderError, InvalidArgument) as e:
            detail = e.detail if isinstance(e, ProviderError) else e.message
            await self._merge(
                transaction_id,
                DisbursementDispatched(status=STATUS_DISPATCH_FAILED, lastError=detail),
            )
            logger.warning(f"Payout for {tx.reference} failed to dispatch; left pending: {detail}")
            raise

        await self._merge(transaction_id, patch)
        logger.info(f"Payout for {tx.reference} dispatched (conversation {response.conversation_id})")
        await self._events.publish(
            WITHDRAWAL_DISPATCHED,
            {"transaction_id": tx.id, "user_id": tx.user_id, "amount": tx.amount},
        )
        return PayoutDispatch(
            conversation_id=response.conversation_id,
            originator_conversation_id=response.originator_conversation_id,
            description=response.response_description,
        )

    async def _merge(self, transaction_id: str, patch: DisbursementDispatched) -> None:
        async with self._sessions() as session, session.begin():
            repo = TransactionRepository(session)
            tx = await repo.find_by_id(transaction_id, for_update=True)
            await repo.merge_metadata(tx, patch.as_patch())
