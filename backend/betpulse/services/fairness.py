"""Provably fair outcome generation for four-way instant-win games.

For every bet a fresh ``server_seed`` is drawn and its SHA-256 commitment
(``server_seed_hash``) is fixed before the outcome is used. The outcome is

    HMAC-SHA256(key=server_seed, msg=f"{client_seed}:{nonce}")

with the first 8 hex characters (4 bytes) read as an unsigned integer and
reduced modulo ``OUTCOME_COUNT``. Once the server seed is revealed anyone can
check ``sha256(server_seed) == server_seed_hash`` and recompute the outcome.
"""

import hashlib
import hmac
import secrets
from dataclasses import asdict, dataclass
from typing import Dict, Optional

OUTCOME_COUNT = 4
MIN_SELECTION = 0
MAX_SELECTION = OUTCOME_COUNT - 1


def generate_server_seed() -> str:
    """32 random bytes, hex encoded. Never reuse across bets."""
    return secrets.token_hex(32)


def generate_client_seed() -> str:
    return secrets.token_hex(16)


def hash_server_seed(server_seed: str) -> str:
    return hashlib.sha256(server_seed.encode("utf-8")).hexdigest()


def compute_outcome(server_seed: str, client_seed: str, nonce: int) -> int:
    """Deterministic outcome in ``[0, OUTCOME_COUNT)`` for the given seeds and nonce."""
    digest = hmac.new(
        server_seed.encode("utf-8"),
        f"{client_seed}:{nonce}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return int(digest[:8], 16) % OUTCOME_COUNT


def is_valid_selection(selection: int) -> bool:
    return MIN_SELECTION <= selection <= MAX_SELECTION


@dataclass(frozen=True)
class FairnessProof:
    """Everything a player needs to re-derive an outcome.

    Attributes:
        server_seed: Secret seed, revealed once the bet is settled.
        server_seed_hash: SHA-256 commitment of ``server_seed``.
        client_seed: Player-supplied or generated seed.
        nonce: The player's 1-based bet sequence number.
        outcome: The derived outcome.
    """
    server_seed: str
    server_seed_hash: str
    client_seed: str
    nonce: int
    outcome: int

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def build_proof(server_seed: str, client_seed: str, nonce: int) -> FairnessProof:
    return FairnessProof(
        server_seed=server_seed,
        server_seed_hash=hash_server_seed(server_seed),
        client_seed=client_seed,
        nonce=nonce,
        outcome=compute_outcome(server_seed, client_seed, nonce),
    )


def verify_outcome(
    server_seed: str,
    client_seed: str,
    nonce: int,
    expected_outcome: int,
    server_seed_hash: Optional[str] = None,
) -> bool:
    """Recompute the outcome and compare it (and the commitment, when given)."""
    if server_seed_hash is not None and not hmac.compare_digest(
        hash_server_seed(server_seed), server_seed_hash
    ):
        return False
    return compute_outcome(server_seed, client_seed, nonce) == expected_outcome
