from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import JSON, DateTime, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from betpulse.database import Base
from betpulse.models.user import utcnow

DEPOSIT = "deposit"
WITHDRAWAL = "withdrawal"

PENDING = "pending"
COMPLETED = "completed"
REJECTED = "rejected"
TERMINAL_STATUSES = frozenset({COMPLETED, REJECTED})


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), index=True)
    type: Mapped[str] = mapped_column(String(20))  # deposit, withdrawal
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    status: Mapped[str] = mapped_column(String(20), default=PENDING, index=True)  # pending, completed, rejected
    reference: Mapped[str] = mapped_column(String(64), unique=True)
    channel: Mapped[str] = mapped_column(String(20))
    # "metadata" is reserved on declarative classes
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="transactions")

    @property
    def mpesa(self) -> Dict[str, Any]:
        """The provider sub-document of ``meta`` (empty when absent)."""
        return dict((self.meta or {}).get("mpesa") or {})
