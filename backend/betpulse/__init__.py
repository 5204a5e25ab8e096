"""BetPulse: provably fair instant-win betting with an M-Pesa wallet."""

__version__ = "0.1.0"
