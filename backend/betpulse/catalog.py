"""Built-in catalog of four-way instant-win games, upserted at startup."""

import logging
from decimal import Decimal
from typing import Dict, List

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from betpulse.models import GameDefinition
from betpulse.repositories import GameRepository

logger = logging.getLogger(__name__)

GAME_SEEDS: List[Dict[str, object]] = [
    {
        "key": "lucky-wheel",
        "name": "Lucky Wheel",
        "description": "Spin a four-segment wheel and call the winning symbol.",
        "category": "Arcade",
        "payout_multiplier": Decimal("3.85"),
        "icon": "🎡",
    },
    {
        "key": "crystal-colors",
        "name": "Crystal Colors",
        "description": "Pick one of four glowing colours to reveal the prize crystal.",
        "category": "Instant Win",
        "payout_multiplier": Decimal("3.90"),
        "icon": "💎",
    },
    {
        "key": "dice-duel",
        "name": "Dice Duel",
        "description": "A digital dice duel where only one special face wins.",
        "category": "Dice",
        "payout_multiplier": Decimal("3.80"),
        "icon": "🎲",
    },
    {
        "key": "nebula-spin",
        "name": "Nebula Spin",
        "description": "Spin the cosmos and find out which nebula pays out.",
        "category": "Arcade",
        "payout_multiplier": Decimal("3.75"),
        "icon": "🪐",
    },
    {
        "key": "tower-quest",
        "name": "Tower Quest",
        "description": "Choose a door of the enchanted castle to find the hidden treasure.",
        "category": "Adventure",
        "payout_multiplier": Decimal("3.80"),
        "icon": "🏰",
    },
    {
        "key": "fortune-cards",
        "name": "Fortune Cards",
        "description": "Four mystic cards, only one carries the top prize.",
        "category": "Cards",
        "payout_multiplier": Decimal("3.85"),
        "icon": "🃏",
    },
    {
        "key": "aurora-pulse",
        "name": "Aurora Pulse",
        "description": "Ride the northern lights and choose the winning beam.",
        "category": "Arcade",
        "payout_multiplier": Decimal("3.90"),
        "icon": "🌌",
    },
    {
        "key": "quantum-pick",
        "name": "Quantum Pick",
        "description": "Predict the quantum collapse into one of four dimensions.",
        "category": "Instant Win",
        "payout_multiplier": Decimal("3.82"),
        "icon": "⚛️",
    },
    {
        "key": "vault-breaker",
        "name": "Vault Breaker",
        "description": "Crack the right vault among four secret combinations.",
        "category": "Adventure",
        "payout_multiplier": Decimal("3.78"),
        "icon": "🗝️",
    },
    {
        "key": "chrono-dash",
        "name": "Chrono Dash",
        "description": "Bet on the right timeline and grab the prize in another era.",
        "category": "Arcade",
        "payout_multiplier": Decimal("3.87"),
        "icon": "⌛",
    },
    {
        "key": "stellar-sprint",
        "name": "Stellar Sprint",
        "description": "Pick the winning ship in a four-lane space race.",
        "category": "Arcade",
        "payout_multiplier": Decimal("3.84"),
        "icon": "🚀",
    },
]


async def seed_games(session_factory: async_sessionmaker[AsyncSession]) -> int:
    """Insert missing catalog entries and refresh existing ones. Returns the number inserted."""
    inserted = 0
    async with session_factory() as session, session.begin():
        repo = GameRepository(session)
        for seed in GAME_SEEDS:
            game = await repo.find_by_key(seed["key"])
            if game is None:
                await repo.add(GameDefinition(**seed))
                inserted += 1
                continue
            for field, value in seed.items():
                setattr(game, field, value)
    logger.info(f"Game catalog ready ({inserted} new of {len(GAME_SEEDS)})")
    return inserted
