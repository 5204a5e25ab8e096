"""Session-bound data access objects."""

from betpulse.repositories.games import BetRepository, GameRepository
from betpulse.repositories.transactions import TransactionRepository
from betpulse.repositories.users import UserRepository

__all__ = [
    "BetRepository",
    "GameRepository",
    "TransactionRepository",
    "UserRepository",
]
