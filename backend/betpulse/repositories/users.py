from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from betpulse.models import User
from betpulse.models.user import utcnow


class UserRepository:
    """Data access for users.

    Balance changes are expressed as single UPDATE statements so the database,
    not the caller, decides whether they apply.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **fields) -> User:
        user = User(**fields)
        self.session.add(user)
        await self.session.flush()
        return user

    async def find_by_id(self, user_id: str) -> Optional[User]:
        return await self.session.get(User, user_id)

    async def find_by_email(self, email: str) -> Optional[User]:
        result = await self.session.execute(select(User).where(User.email == email.lower()))
        return result.scalar_one_or_none()

    async def exists(self, user_id: str) -> bool:
        result = await self.session.execute(select(User.id).where(User.id == user_id))
        return result.scalar_one_or_none() is not None

    async def get_balance(self, user_id: str) -> Optional[Decimal]:
        result = await self.session.execute(select(User.balance).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def conditional_debit(self, user_id: str, amount: Decimal) -> bool:
        """Decrement the balance only if it covers ``amount``. Returns whether a row changed."""
        result = await self.session.execute(
            update(User)
            .where(User.id == user_id, User.balance >= amount)
            .values(balance=User.balance - amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def credit(self, user_id: str, delta: Decimal) -> bool:
        """Unconditionally add ``delta`` (may be negative). Returns whether the user exists."""
        result = await self.session.execute(
            update(User)
            .where(User.id == user_id)
            .values(balance=User.balance + delta, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
