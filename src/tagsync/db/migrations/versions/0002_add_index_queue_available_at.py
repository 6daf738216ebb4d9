"""add_index_queue_available_at

Revision ID: 8d2f4b6a1c93
Revises: 3c1e7a9f2b40
Create Date: 2026-10-19 14:00:00.000000

Adds a retry-not-before timestamp to queue rows. A nacked entry whose own
submission failed is held back until ``available_at`` so it cannot occupy
the head of the queue; NULL means eligible immediately.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "8d2f4b6a1c93"
down_revision = "3c1e7a9f2b40"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("index_queue_entries") as batch_op:
        batch_op.add_column(
            sa.Column("available_at", sa.DateTime(timezone=True), nullable=True)
        )


def downgrade() -> None:
    with op.batch_alter_table("index_queue_entries") as batch_op:
        batch_op.drop_column("available_at")
