"""Bet placement and verification for the instant-win games."""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from betpulse.errors import (
    BetNotFound,
    GameNotFound,
    InvalidArgument,
    SettlementError,
    UserNotFound,
)
from betpulse.models import Bet, GameDefinition
from betpulse.repositories import BetRepository, GameRepository, UserRepository
from betpulse.services import fairness
from betpulse.services.events import BET_SETTLED, EventBus
from betpulse.services.ledger import CENTS, LedgerGuard, to_cents

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100


@dataclass
class BetReceipt:
    bet: Bet
    balance: Decimal
    fairness: fairness.FairnessProof

    @property
    def win(self) -> bool:
        return self.bet.win

    @property
    def payout(self) -> Decimal:
        return self.bet.payout


@dataclass
class BetVerification:
    bet: Bet
    outcome: int
    is_valid: bool


def compute_payout(wager: Decimal, multiplier: Decimal, win: bool) -> Decimal:
    if not win:
        return Decimal("0.00")
    return (wager * multiplier).quantize(CENTS, rounding=ROUND_HALF_UP)


class BetSettlementService:
    """Debits the stake, derives the outcome, records the bet and pays out.

    All of it runs in one database transaction: if the bet cannot be recorded
    the debit is rolled back with it and a ``SettlementError`` is raised.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        events: EventBus,
        server_seed_factory: Callable[[], str] = fairness.generate_server_seed,
    ):
        self._sessions = session_factory
        self._events = events
        self._server_seed_factory = server_seed_factory

    async def list_games(self) -> List[GameDefinition]:
        async with self._sessions() as session:
            return await GameRepository(session).list_all()

    async def list_user_bets(self, user_id: str, limit: int = HISTORY_LIMIT) -> List[Bet]:
        async with self._sessions() as session:
            return await BetRepository(session).list_by_user(user_id, limit)

    async def place_bet(
        self,
        user_id: str,
        game_key: str,
        selection: int,
        wager: Decimal,
        client_seed: Optional[str] = None,
    ) -> BetReceipt:
        async with self._sessions() as session:
            user = await UserRepository(session).find_by_id(user_id)
            if user is None:
                raise UserNotFound()
            game = await GameRepository(session).find_by_key(game_key)
            if game is None:
                raise GameNotFound()

        if not fairness.is_valid_selection(selection):
            raise InvalidArgument("Selection must be between 0 and 3.")
        wager = to_cents(wager, "Wager")

        try:
            async with self._sessions() as session, session.begin():
                ledger = LedgerGuard(session)
                bets = BetRepository(session)

                # InsufficientFunds here aborts the unit of work before anything else happens
                await ledger.debit(user_id, wager)

                nonce = await bets.count_by_user(user_id) + 1
                proof = fairness.build_proof(
                    self._server_seed_factory(),
                    client_seed or fairness.generate_client_seed(),
                    nonce,
                )
                win = proof.outcome == selection
                payout = compute_payout(wager, game.payout_multiplier, win)

                bet = await bets.create(
                    Bet(
                        user_id=user_id,
                        game_key=game.key,
                        selection=selection,
                        wager=wager,
                        outcome=proof.outcome,
                        payout=payout,
                        win=win,
                        server_seed=proof.server_seed,
                        server_seed_hash=proof.server_seed_hash,
                        client_seed=proof.client_seed,
                        nonce=proof.nonce,
                    )
                )

                if payout > 0:
                    balance = await ledger.credit(user_id, payout)
                else:
                    balance = await UserRepository(session).get_balance(user_id)
        except SQLAlchemyError as e:
            logger.critical(
                f"Settlement aborted after stake debit for user {user_id} "
                f"(game={game_key}, wager={wager}); transaction rolled back: {e}"
            )
            raise SettlementError() from e

        logger.info(
            f"Bet {bet.id} settled: user={user_id} game={game.key} "
            f"selection={selection} outcome={proof.outcome} payout={payout}"
        )
        await self._events.publish(
            BET_SETTLED,
            {
                "bet_id": bet.id,
                "user_id": user_id,
                "game_key": game.key,
                "wager": wager,
                "payout": payout,
                "win": win,
                "balance": balance,
            },
        )
        return BetReceipt(bet=bet, balance=balance, fairness=proof)

    async def verify_bet(self, bet_id: str) -> BetVerification:
        """Recompute a stored bet's outcome from its revealed seeds. Read-only."""
        async with self._sessions() as session:
            bet = await BetRepository(session).find_by_id(bet_id)
        if bet is None:
            raise BetNotFound()
        outcome = fairness.compute_outcome(bet.server_seed, bet.client_seed, bet.nonce)
        is_valid = fairness.verify_outcome(
            bet.server_seed,
            bet.client_seed,
            bet.nonce,
            bet.outcome,
            server_seed_hash=bet.server_seed_hash,
        )
        return BetVerification(bet=bet, outcome=outcome, is_valid=is_valid)
