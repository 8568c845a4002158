"""SQLAlchemy models for the transaction intent journal."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import BigInteger, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TransactionIntentModel(Base):
    """Latest known state of each transaction intent."""

    __tablename__ = "transaction_intents"

    intent_id: Mapped[str] = mapped_column(String(32), primary_key=True)

    user_address: Mapped[str] = mapped_column(String(42), nullable=False)
    asset: Mapped[str] = mapped_column(String(32), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    state: Mapped[str] = mapped_column(String(32), nullable=False)
    required_network: Mapped[str] = mapped_column(String(40), nullable=False)
    subnet_id: Mapped[str | None] = mapped_column(String(66), nullable=True)

    # Raw token units (uint256).
    amount: Mapped[Decimal | None] = mapped_column(Numeric(78, 0), nullable=True)
    settled_amount: Mapped[Decimal | None] = mapped_column(Numeric(78, 0), nullable=True)
    lock_seconds: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    approval_tx_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)

    error_type: Mapped[str | None] = mapped_column(String(80), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        Index("idx_transaction_intents_user_state", "user_address", "state"),
        Index("idx_transaction_intents_tx_hash", "tx_hash"),
    )


class IntentTransitionModel(Base):
    """Append-only log of intent state changes."""

    __tablename__ = "intent_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    intent_id: Mapped[str] = mapped_column(String(32), nullable=False)
    previous_state: Mapped[str] = mapped_column(String(32), nullable=False)
    state: Mapped[str] = mapped_column(String(32), nullable=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_intent_transitions_intent", "intent_id"),)
