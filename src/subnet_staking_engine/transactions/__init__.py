"""Transaction intents and the orchestrator that drives them."""

from subnet_staking_engine.transactions.handle import IntentHandle
from subnet_staking_engine.transactions.models import (
    FAILURE_STATES,
    TERMINAL_STATES,
    IntentEvent,
    IntentKind,
    IntentState,
    TransactionIntent,
)
from subnet_staking_engine.transactions.orchestrator import IntentJournal, TransactionOrchestrator

__all__ = [
    "FAILURE_STATES",
    "TERMINAL_STATES",
    "IntentEvent",
    "IntentHandle",
    "IntentJournal",
    "IntentKind",
    "IntentState",
    "TransactionIntent",
    "TransactionOrchestrator",
]
