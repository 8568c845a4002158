"""Persists intent transitions through `IntentRepository`."""

from __future__ import annotations

import logging

from subnet_staking_engine.storage.database import DatabaseManager
from subnet_staking_engine.storage.repos import IntentDTO, IntentRepository
from subnet_staking_engine.transactions.models import IntentEvent

logger = logging.getLogger(__name__)


class DatabaseIntentJournal:
    """Async callable suitable as the orchestrator's `journal`.

    Each transition upserts the intent row and appends one transition row
    in a single transaction.
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def __call__(self, event: IntentEvent) -> None:
        async with self._db.get_async_session() as session:
            repo = IntentRepository(session)
            await repo.upsert(IntentDTO.from_intent(event.intent))
            await repo.record_transition(
                event.intent.intent_id,
                event.previous.value,
                event.state.value,
                at=event.at,
                detail=event.detail,
            )
        logger.debug("Journaled %s -> %s for %s", event.previous.value, event.state.value, event.intent.intent_id)

    async def list_open(self, user: str | None = None) -> list[IntentDTO]:
        async with self._db.get_async_session() as session:
            return await IntentRepository(session).list_open(user)
