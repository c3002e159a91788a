"""create batch queue tables

Revision ID: aa01001bqA01
Revises:
Create Date: 2026-10-16 12:00:00.000000

Hey future me - these two tables ARE the batch queue. There is no broker.

batch_processing_status: one row per batch run of a process type
- status: pending → running → completed (or failed)
- processed/successful/failed_items: counters updated by every tick
- last_heartbeat: touched every tick, the status query reports staleness from it
- current_items: JSON snapshot of the item being processed right now

batch_queue_items: one row per unit of work
- batch_id: NOT a foreign key! Items of a deleted batch must survive so the
  recovery sweep can fail them as orphans instead of the DB silently cascading.
- status: pending → processing → completed | failed (or back to pending on retry)
- scheduled_at: retry backoff, only rows with scheduled_at <= now are claimable
- metadata: JSON the worker gets (artist/title, composer_name, ...)

INDEXES:
- ix_batch_queue_items_claim: the per-tick claim query
  (batch_id, status, priority DESC, created_at ASC)
- ix_batch_queue_items_type_status: recovery sweep + retry_failed by item type
- ix_batch_processing_status_type_status_created: running/latest batch lookup

Idempotent: tables created by Database.create_tables()
in dev are left alone.
"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "aa01001bqA01"
down_revision = None
branch_labels = None
depends_on = None


def _existing_tables() -> set[str]:
    inspector = sa.inspect(op.get_bind())
    return set(inspector.get_table_names())


def upgrade() -> None:
    existing = _existing_tables()

    # === batch_processing_status ===
    if "batch_processing_status" not in existing:
        op.create_table(
            "batch_processing_status",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("process_type", sa.String(100), nullable=False),
            sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
            sa.Column("total_items", sa.Integer, nullable=False, server_default="0"),
            sa.Column("processed_items", sa.Integer, nullable=False, server_default="0"),
            sa.Column("successful_items", sa.Integer, nullable=False, server_default="0"),
            sa.Column("failed_items", sa.Integer, nullable=False, server_default="0"),
            sa.Column("current_items", sa.JSON, nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=True),
            sa.Column(
                "created_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
            ),
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
            ),
        )
        op.create_index(
            "ix_batch_processing_status_process_type",
            "batch_processing_status",
            ["process_type"],
        )
        op.create_index(
            "ix_batch_processing_status_status",
            "batch_processing_status",
            ["status"],
        )
        op.create_index(
            "ix_batch_processing_status_type_status_created",
            "batch_processing_status",
            ["process_type", "status", "created_at"],
        )

    # === batch_queue_items ===
    if "batch_queue_items" not in existing:
        op.create_table(
            "batch_queue_items",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("batch_id", sa.String(36), nullable=False),
            sa.Column("item_id", sa.String(255), nullable=False),
            sa.Column("item_type", sa.String(100), nullable=False),
            sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
            sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
            sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
            sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
            sa.Column("metadata", sa.JSON, nullable=False),
            sa.Column("error_message", sa.Text, nullable=True),
            sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column(
                "created_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
            ),
            sa.Column(
                "updated_at",
                sa.DateTime(timezone=True),
                nullable=False,
                server_default=sa.func.now(),
            ),
        )
        op.create_index("ix_batch_queue_items_batch_id", "batch_queue_items", ["batch_id"])
        op.create_index("ix_batch_queue_items_item_type", "batch_queue_items", ["item_type"])
        op.create_index("ix_batch_queue_items_status", "batch_queue_items", ["status"])
        op.create_index(
            "ix_batch_queue_items_claim",
            "batch_queue_items",
            ["batch_id", "status", "priority", "created_at"],
        )
        op.create_index(
            "ix_batch_queue_items_type_status",
            "batch_queue_items",
            ["item_type", "status"],
        )


def downgrade() -> None:
    existing = _existing_tables()

    if "batch_queue_items" in existing:
        op.drop_index("ix_batch_queue_items_type_status", table_name="batch_queue_items")
        op.drop_index("ix_batch_queue_items_claim", table_name="batch_queue_items")
        op.drop_index("ix_batch_queue_items_status", table_name="batch_queue_items")
        op.drop_index("ix_batch_queue_items_item_type", table_name="batch_queue_items")
        op.drop_index("ix_batch_queue_items_batch_id", table_name="batch_queue_items")
        op.drop_table("batch_queue_items")

    if "batch_processing_status" in existing:
        op.drop_index(
            "ix_batch_processing_status_type_status_created",
            table_name="batch_processing_status",
        )
        op.drop_index("ix_batch_processing_status_status", table_name="batch_processing_status")
        op.drop_index(
            "ix_batch_processing_status_process_type", table_name="batch_processing_status"
        )
        op.drop_table("batch_processing_status")
