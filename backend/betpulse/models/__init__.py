"""Database models."""

from betpulse.models.user import User
from betpulse.models.game import GameDefinition, Bet
from betpulse.models.transaction import Transaction

__all__ = [
    "User",
    "GameDefinition",
    "Bet",
    "Transaction",
]
