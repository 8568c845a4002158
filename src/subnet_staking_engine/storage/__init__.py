"""Storage layer - intent journal schema and repositories."""

from subnet_staking_engine.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from subnet_staking_engine.storage.journal import DatabaseIntentJournal
from subnet_staking_engine.storage.models import Base, IntentTransitionModel, TransactionIntentModel
from subnet_staking_engine.storage.repos import IntentDTO, IntentRepository, IntentTransitionDTO

__all__ = [
    "Base",
    "DatabaseIntentJournal",
    "DatabaseManager",
    "IntentDTO",
    "IntentRepository",
    "IntentTransitionDTO",
    "IntentTransitionModel",
    "TransactionIntentModel",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
