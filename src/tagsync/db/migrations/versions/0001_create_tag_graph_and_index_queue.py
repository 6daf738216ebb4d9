"""create_tag_graph_and_index_queue

Revision ID: 3c1e7a9f2b40
Revises:
Create Date: 2026-10-19 09:00:00.000000

Initial schema for the tag taxonomy and the search index queue.

New Tables:
1. tags - Canonical tags and merged synonyms (merged_into_id)
2. tag_parents - Type hierarchy edges (child belongs to parent)
3. taggings - Polymorphic entity/tag associations
4. index_queue_entries - Durable reindex queue (pending / in_flight)
5. tag_operation_logs - Audit log for create, merge and hierarchy edits

Key Features:
- UUIDv7 primary keys for tags and operation logs
- One pending and one in-flight queue row per entity (unique constraint)
- Dispatch-order index on (state, priority, enqueued_at)
- CHECK constraints for canonical/merged exclusivity and self-loops
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "3c1e7a9f2b40"
down_revision = None
branch_labels = None
depends_on = None

_BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    """
    Create tag graph and index queue tables.

    Creates tables in FK dependency order:
    1. tags (self-referencing FK only)
    2. tag_parents, taggings (FK to tags)
    3. index_queue_entries, tag_operation_logs (no FKs)
    """
    # =========================================================================
    # TABLE 1: tags
    # =========================================================================
    op.create_table(
        "tags",
        sa.Column("id", sa.Uuid(), nullable=False, primary_key=True),
        sa.Column("name", sa.String(150), nullable=False),
        sa.Column("normalized_name", sa.String(150), nullable=False),
        sa.Column("tag_type", sa.String(20), nullable=False),
        sa.Column("canonical", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("merged_into_id", sa.Uuid(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.ForeignKeyConstraint(
            ["merged_into_id"], ["tags.id"], name="fk_tags_merged_into_id"
        ),
        sa.UniqueConstraint("normalized_name", name="uq_tags_normalized_name"),
        sa.CheckConstraint(
            "(canonical AND merged_into_id IS NULL) OR "
            "(NOT canonical AND merged_into_id IS NOT NULL)",
            name="ck_tags_canonical_xor_merged",
        ),
        sa.CheckConstraint(
            "merged_into_id IS NULL OR merged_into_id <> id",
            name="ck_tags_no_self_merge",
        ),
    )
    op.create_index("ix_tags_merged_into_id", "tags", ["merged_into_id"])
    op.create_index("ix_tags_tag_type", "tags", ["tag_type"])

    # =========================================================================
    # TABLE 2: tag_parents
    # =========================================================================
    op.create_table(
        "tag_parents",
        sa.Column("child_id", sa.Uuid(), nullable=False),
        sa.Column("parent_id", sa.Uuid(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.PrimaryKeyConstraint("child_id", "parent_id"),
        sa.ForeignKeyConstraint(["child_id"], ["tags.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_id"], ["tags.id"], ondelete="CASCADE"),
        sa.CheckConstraint("child_id <> parent_id", name="ck_tag_parents_no_loop"),
    )
    op.create_index("ix_tag_parents_parent_id", "tag_parents", ["parent_id"])

    # =========================================================================
    # TABLE 3: taggings
    # =========================================================================
    op.create_table(
        "taggings",
        sa.Column("id", _BIGINT_PK, nullable=False, autoincrement=True),
        sa.Column("taggable_type", sa.String(30), nullable=False),
        sa.Column("taggable_id", sa.BigInteger(), nullable=False),
        sa.Column("tag_id", sa.Uuid(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["tag_id"], ["tags.id"]),
        sa.UniqueConstraint(
            "taggable_type", "taggable_id", "tag_id", name="uq_taggings_triple"
        ),
    )
    op.create_index("ix_taggings_tag_id", "taggings", ["tag_id"])

    # =========================================================================
    # TABLE 4: index_queue_entries
    # =========================================================================
    op.create_table(
        "index_queue_entries",
        sa.Column("id", _BIGINT_PK, nullable=False, autoincrement=True),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("entity_id", sa.BigInteger(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column(
            "state", sa.String(12), nullable=False, server_default="pending"
        ),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_id", sa.Uuid(), nullable=True),
        sa.Column("leased_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "attempts", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "entity_type", "entity_id", "state", name="uq_index_queue_entity_state"
        ),
        sa.CheckConstraint(
            "state IN ('pending', 'in_flight')", name="ck_index_queue_state"
        ),
    )
    op.create_index(
        "ix_index_queue_dispatch_order",
        "index_queue_entries",
        ["state", "priority", "enqueued_at"],
    )
    op.create_index(
        "ix_index_queue_leased_until", "index_queue_entries", ["leased_until"]
    )

    # =========================================================================
    # TABLE 5: tag_operation_logs
    # =========================================================================
    op.create_table(
        "tag_operation_logs",
        sa.Column("id", sa.Uuid(), nullable=False, primary_key=True),
        sa.Column("operation_type", sa.String(30), nullable=False),
        sa.Column("source_tag_ids", sa.JSON(), nullable=False),
        sa.Column("target_tag_id", sa.Uuid(), nullable=True),
        sa.Column(
            "affected_count", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column(
            "performed_by", sa.String(100), nullable=False, server_default="cli"
        ),
        sa.Column(
            "performed_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=True,
        ),
    )


def downgrade() -> None:
    """Drop all tables in reverse FK dependency order."""
    op.drop_table("tag_operation_logs")
    op.drop_index("ix_index_queue_leased_until", table_name="index_queue_entries")
    op.drop_index("ix_index_queue_dispatch_order", table_name="index_queue_entries")
    op.drop_table("index_queue_entries")
    op.drop_index("ix_taggings_tag_id", table_name="taggings")
    op.drop_table("taggings")
    op.drop_index("ix_tag_parents_parent_id", table_name="tag_parents")
    op.drop_table("tag_parents")
    op.drop_index("ix_tags_tag_type", table_name="tags")
    op.drop_index("ix_tags_merged_into_id", table_name="tags")
    op.drop_table("tags")
