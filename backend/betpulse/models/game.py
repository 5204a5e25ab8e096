from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from betpulse.database import Base
from betpulse.models.user import utcnow


class GameDefinition(Base):
    __tablename__ = "game_definitions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    key: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(100))
    description: Mapped[str] = mapped_column(String(500))
    category: Mapped[str] = mapped_column(String(50))
    payout_multiplier: Mapped[Decimal] = mapped_column(Numeric(6, 2))
    icon: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Bet(Base):
    """A settled instant-win bet. Never updated after insert."""

    __tablename__ = "bets"
    __table_args__ = (
        Index("ix_bets_user_created", "user_id", "created_at"),
        UniqueConstraint("user_id", "nonce", name="uq_bets_user_nonce"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    game_key: Mapped[str] = mapped_column(String(64), index=True)
    selection: Mapped[int] = mapped_column(Integer)  # 0-3
    wager: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    outcome: Mapped[int] = mapped_column(Integer)  # 0-3
    payout: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    win: Mapped[bool] = mapped_column(Boolean)
    server_seed: Mapped[str] = mapped_column(String(128))
    server_seed_hash: Mapped[str] = mapped_column(String(64))
    client_seed: Mapped[str] = mapped_column(String(128))
    nonce: Mapped[int] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="bets")
