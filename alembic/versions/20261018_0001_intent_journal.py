"""Add transaction intent journal tables.

Revision ID: 001_intent_journal
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001_intent_journal"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "transaction_intents",
        sa.Column("intent_id", sa.String(32), nullable=False),
        sa.Column("user_address", sa.String(42), nullable=False),
        sa.Column("asset", sa.String(32), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("state", sa.String(32), nullable=False),
        sa.Column("required_network", sa.String(40), nullable=False),
        sa.Column("subnet_id", sa.String(66), nullable=True),
        sa.Column("amount", sa.Numeric(78, 0), nullable=True),
        sa.Column("settled_amount", sa.Numeric(78, 0), nullable=True),
        sa.Column("lock_seconds", sa.BigInteger(), nullable=True),
        sa.Column("tx_hash", sa.String(66), nullable=True),
        sa.Column("approval_tx_hash", sa.String(66), nullable=True),
        sa.Column("error_type", sa.String(80), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("intent_id"),
    )
    op.create_index(
        "idx_transaction_intents_user_state", "transaction_intents", ["user_address", "state"]
    )
    op.create_index("idx_transaction_intents_tx_hash", "transaction_intents", ["tx_hash"])

    op.create_table(
        "intent_transitions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("intent_id", sa.String(32), nullable=False),
        sa.Column("previous_state", sa.String(32), nullable=False),
        sa.Column("state", sa.String(32), nullable=False),
        sa.Column("detail", sa.Text(), nullable=True),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_intent_transitions_intent", "intent_transitions", ["intent_id"])


def downgrade() -> None:
    op.drop_index("idx_intent_transitions_intent", table_name="intent_transitions")
    op.drop_table("intent_transitions")
    op.drop_index("idx_transaction_intents_tx_hash", table_name="transaction_intents")
    op.drop_index("idx_transaction_intents_user_state", table_name="transaction_intents")
    op.drop_table("transaction_intents")
