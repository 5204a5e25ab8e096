from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from betpulse.models import Bet, GameDefinition


class GameRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_key(self, key: str) -> Optional[GameDefinition]:
        result = await self.session.execute(select(GameDefinition).where(GameDefinition.key == key))
        return result.scalar_one_or_none()

    async def list_all(self) -> List[GameDefinition]:
        result = await self.session.execute(select(GameDefinition).order_by(GameDefinition.name))
        return list(result.scalars())

    async def add(self, game: GameDefinition) -> GameDefinition:
        self.session.add(game)
        await self.session.flush()
        return game


class BetRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, bet: Bet) -> Bet:
        self.session.add(bet)
        await self.session.flush()
        return bet

    async def find_by_id(self, bet_id: str) -> Optional[Bet]:
        return await self.session.get(Bet, bet_id)

    async def count_by_user(self, user_id: str) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(Bet).where(Bet.user_id == user_id)
        )
        return int(result.scalar_one())

    async def list_by_user(self, user_id: str, limit: int = 100) -> List[Bet]:
        result = await self.session.execute(
            select(Bet)
            .where(Bet.user_id == user_id)
            .order_by(Bet.created_at.desc(), Bet.nonce.desc())
            .limit(limit)
        )
        return list(result.scalars())
