"""Repository for the transaction intent journal."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

import sqlalchemy as sa
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from subnet_staking_engine.storage.models import IntentTransitionModel, TransactionIntentModel
from subnet_staking_engine.transactions.models import TERMINAL_STATES, IntentKind, IntentState

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from subnet_staking_engine.transactions.models import TransactionIntent

logger = logging.getLogger(__name__)

_UPDATABLE_COLUMNS = (
    "state",
    "amount",
    "settled_amount",
    "lock_seconds",
    "tx_hash",
    "approval_tx_hash",
    "error_type",
    "error_message",
    "updated_at",
)


def _to_numeric(value: int | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _to_int(value: Decimal | None) -> int | None:
    return int(value) if value is not None else None


@dataclass
class IntentDTO:
    """Data transfer object for journaled intents."""

    intent_id: str
    user_address: str
    asset: str
    kind: str
    state: str
    required_network: str
    subnet_id: str | None = None
    amount: int | None = None
    settled_amount: int | None = None
    lock_seconds: int | None = None
    tx_hash: str | None = None
    approval_tx_hash: str | None = None
    error_type: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_intent(cls, intent: TransactionIntent) -> IntentDTO:
        return cls(
            intent_id=intent.intent_id,
            user_address=intent.user.lower(),
            asset=intent.asset,
            kind=intent.kind.value,
            state=intent.state.value,
            required_network=intent.required_network,
            subnet_id=intent.subnet_id,
            amount=intent.amount,
            settled_amount=intent.settled_amount,
            lock_seconds=intent.lock_seconds,
            tx_hash=intent.tx_hash,
            approval_tx_hash=intent.approval_tx_hash,
            error_type=type(intent.error).__name__ if intent.error else None,
            error_message=str(intent.error) if intent.error else None,
            created_at=intent.created_at,
            updated_at=intent.updated_at,
        )

    @classmethod
    def from_model(cls, model: TransactionIntentModel) -> IntentDTO:
        return cls(
            intent_id=model.intent_id,
            user_address=model.user_address,
            asset=model.asset,
            kind=model.kind,
            state=model.state,
            required_network=model.required_network,
            subnet_id=model.subnet_id,
            amount=_to_int(model.amount),
            settled_amount=_to_int(model.settled_amount),
            lock_seconds=model.lock_seconds,
            tx_hash=model.tx_hash,
            approval_tx_hash=model.approval_tx_hash,
            error_type=model.error_type,
            error_message=model.error_message,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


@dataclass
class IntentTransitionDTO:
    intent_id: str
    previous_state: str
    state: str
    at: datetime
    detail: str | None = None

    @classmethod
    def from_model(cls, model: IntentTransitionModel) -> IntentTransitionDTO:
        return cls(
            intent_id=model.intent_id,
            previous_state=model.previous_state,
            state=model.state,
            at=model.at,
            detail=model.detail,
        )


class IntentRepository:
    """Repository for transaction intents and their transitions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _dialect(self) -> str:
        bind = self.session.get_bind()
        return bind.dialect.name

    async def upsert(self, dto: IntentDTO) -> IntentDTO:
        """Insert or update an intent by id."""
        now = datetime.now(UTC)
        values = {
            "intent_id": dto.intent_id,
            "user_address": dto.user_address.lower(),
            "asset": dto.asset,
            "kind": dto.kind,
            "state": dto.state,
            "required_network": dto.required_network,
            "subnet_id": dto.subnet_id,
            "amount": _to_numeric(dto.amount),
            "settled_amount": _to_numeric(dto.settled_amount),
            "lock_seconds": dto.lock_seconds,
            "tx_hash": dto.tx_hash,
            "approval_tx_hash": dto.approval_tx_hash,
            "error_type": dto.error_type,
            "error_message": dto.error_message,
            "created_at": dto.created_at or now,
            "updated_at": dto.updated_at or now,
        }
        if self._dialect() == "postgresql":
            stmt = pg_insert(TransactionIntentModel).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["intent_id"],
                set_={col: getattr(stmt.excluded, col) for col in _UPDATABLE_COLUMNS},
            )
            await self.session.execute(stmt)
        else:
            sqlite_stmt = sqlite_insert(TransactionIntentModel).values(**values)
            sqlite_stmt = sqlite_stmt.on_conflict_do_update(
                index_elements=["intent_id"],
                set_={col: getattr(sqlite_stmt.excluded, col) for col in _UPDATABLE_COLUMNS},
            )
            await self.session.execute(sqlite_stmt)
        await self.session.flush()
        return dto

    async def record_transition(
        self,
        intent_id: str,
        previous_state: str,
        state: str,
        *,
        at: datetime | None = None,
        detail: str | None = None,
    ) -> None:
        self.session.add(
            IntentTransitionModel(
                intent_id=intent_id,
                previous_state=previous_state,
                state=state,
                detail=detail,
                at=at or datetime.now(UTC),
            )
        )
        await self.session.flush()

    async def get(self, intent_id: str) -> IntentDTO | None:
        model = await self.session.get(TransactionIntentModel, intent_id)
        return IntentDTO.from_model(model) if model else None

    async def list_open(self, user: str | None = None) -> list[IntentDTO]:
        """Intents that had not finished when last journaled, oldest first."""
        terminal = [state.value for state in TERMINAL_STATES]
        stmt = select(TransactionIntentModel).where(
            TransactionIntentModel.state.not_in(terminal),
            sa.not_(
                sa.and_(
                    TransactionIntentModel.state == IntentState.CONFIRMED.value,
                    TransactionIntentModel.kind != IntentKind.CLAIM.value,
                )
            ),
        )
        if user is not None:
            stmt = stmt.where(TransactionIntentModel.user_address == user.lower())
        stmt = stmt.order_by(TransactionIntentModel.created_at)
        result = await self.session.execute(stmt)
        return [IntentDTO.from_model(m) for m in result.scalars().all()]

    async def list_transitions(self, intent_id: str) -> list[IntentTransitionDTO]:
        stmt = (
            select(IntentTransitionModel)
            .where(IntentTransitionModel.intent_id == intent_id)
            .order_by(IntentTransitionModel.id)
        )
        result = await self.session.execute(stmt)
        return [IntentTransitionDTO.from_model(m) for m in result.scalars().all()]
