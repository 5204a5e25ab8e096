from typing import Any, List, Mapping, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from betpulse.models import Transaction
from betpulse.models.user import utcnow
from betpulse.services.metadata import deep_merge

CHECKOUT_ID_PATH = ("mpesa", "checkoutRequestId")
CONVERSATION_ID_PATH = ("mpesa", "conversationId")
ORIGINATOR_CONVERSATION_ID_PATH = ("mpesa", "originatorConversationId")


class TransactionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields) -> Transaction:
        tx = Transaction(**fields)
        self.session.add(tx)
        await self.session.flush()
        return tx

    async def find_by_id(self, tx_id: str, for_update: bool = False) -> Optional[Transaction]:
        stmt = select(Transaction).where(Transaction.id == tx_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_reference(self, reference: str) -> Optional[Transaction]:
        result = await self.session.execute(select(Transaction).where(Transaction.reference == reference))
        return result.scalar_one_or_none()

    async def find_by_checkout_id(self, checkout_request_id: str, for_update: bool = False) -> Optional[Transaction]:
        stmt = select(Transaction).where(
            Transaction.meta[CHECKOUT_ID_PATH].as_string() == checkout_request_id
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def find_by_conversation_id(self, conversation_id: str, for_update: bool = False) -> Optional[Transaction]:
        """Match either of the two correlation ids a disbursement carries."""
        stmt = select(Transaction).where(
            or_(
                Transaction.meta[CONVERSATION_ID_PATH].as_string() == conversation_id,
                Transaction.meta[ORIGINATOR_CONVERSATION_ID_PATH].as_string() == conversation_id,
            )
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt.limit(1))
        return result.scalar_one_or_none()

    async def compare_and_set_status(self, tx_id: str, expected: str, new_status: str) -> bool:
        """Move ``tx_id`` from ``expected`` to ``new_status``; False if it was not in ``expected``."""
        result = await self.session.execute(
            update(Transaction)
            .where(Transaction.id == tx_id, Transaction.status == expected)
            .values(status=new_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def merge_metadata(self, tx: Transaction, patch: Mapping[str, Any]) -> Transaction:
        tx.meta = deep_merge(tx.meta or {}, patch)
        await self.session.flush()
        return tx

    async def list_by_user(self, user_id: str, limit: int = 100) -> List[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars())
