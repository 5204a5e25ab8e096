"""Race-safe balance mutations.

Both operations are single conditional UPDATE statements executed on the
caller's session, so they join whatever unit of work the caller has open and
stay correct across multiple service instances without in-process locks.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from sqlalchemy.ext.asyncio import AsyncSession

from betpulse.errors import InsufficientFunds, InvalidArgument, UserNotFound
from betpulse.repositories import UserRepository

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
# Largest value a Numeric(14, 2) balance column holds
MAX_AMOUNT = Decimal("999999999999.99")


def to_cents(amount, label: str = "Amount") -> Decimal:
    """Round ``amount`` half-up to the two places the ledger stores.

    Raises:
        InvalidArgument: not a number, not positive once rounded, or too large.
    """
    try:
        value = Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise InvalidArgument(f"{label} is not a valid amount.") from e
    if value.is_nan() or value <= 0:
        raise InvalidArgument(f"{label} must be greater than zero.")
    if value > MAX_AMOUNT:
        raise InvalidArgument(f"{label} is too large.")
    return value


class LedgerGuard:
    def __init__(self, session: AsyncSession):
        self._users = UserRepository(session)

    async def debit(self, user_id: str, amount: Decimal) -> Decimal:
        """Take ``amount`` from the user's balance and return the new balance.

        Raises:
            InvalidArgument: ``amount`` is not positive.
            InsufficientFunds: the balance does not cover ``amount``.
            UserNotFound: no such user.
        """
        if amount <= 0:
            raise InvalidArgument("Debit amount must be positive.")
        if not await self._users.conditional_debit(user_id, amount):
            if await self._users.exists(user_id):
                raise InsufficientFunds()
            raise UserNotFound()
        return await self._users.get_balance(user_id)

    async def credit(self, user_id: str, amount: Decimal) -> Decimal:
        """Add ``amount`` (negative for compensating adjustments) and return the new balance."""
        if not await self._users.credit(user_id, amount):
            raise UserNotFound()
        return await self._users.get_balance(user_id)
