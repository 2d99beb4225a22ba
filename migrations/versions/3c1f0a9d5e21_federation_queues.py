"""federation queues

Revision ID: 3c1f0a9d5e21
Revises:
Create Date: 2026-10-16 09:12:44.512903

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "3c1f0a9d5e21"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _follow_table(name: str, constraint: str, index: str) -> None:
    op.create_table(
        name,
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("local_user_id", sa.Text(), nullable=False),
        sa.Column("remote_actor_id", sa.Text(), nullable=False),
        sa.Column("activity_id", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("local_user_id", "remote_actor_id", name=constraint),
    )
    op.create_index(index, name, ["remote_actor_id"])


def upgrade() -> None:
    """Create the outbox, queue, follow, rate limit and actor cache tables."""
    op.create_table(
        "ap_outbox_activities",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("activity_id", sa.Text(), nullable=False),
        sa.Column("local_user_id", sa.Text(), nullable=False),
        sa.Column("activity_type", sa.String(length=64), nullable=False),
        sa.Column("activity_json", sa.Text(), nullable=False),
        sa.Column("object_id", sa.Text(), nullable=True),
        sa.Column("object_type", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("activity_id"),
    )
    op.create_index("idx_ap_outbox_user", "ap_outbox_activities", ["local_user_id"])
    op.create_index("idx_ap_outbox_created", "ap_outbox_activities", ["created_at"])

    op.create_table(
        "ap_delivery_queue",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("activity_id", sa.Text(), nullable=False),
        sa.Column("target_inbox_url", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "activity_id", "target_inbox_url", name="uq_ap_delivery_activity_target"
        ),
    )
    op.create_index(
        "idx_delivery_queue_status", "ap_delivery_queue", ["status", "created_at"]
    )

    op.create_table(
        "ap_inbox_activities",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("local_user_id", sa.Text(), nullable=False),
        sa.Column("remote_actor_id", sa.Text(), nullable=True),
        sa.Column("activity_id", sa.Text(), nullable=False),
        sa.Column("activity_type", sa.String(length=64), nullable=False),
        sa.Column("activity_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("activity_id"),
    )
    op.create_index("idx_ap_inbox_user", "ap_inbox_activities", ["local_user_id"])
    op.create_index("idx_ap_inbox_status", "ap_inbox_activities", ["status", "created_at"])

    _follow_table("ap_followers", "uq_ap_followers_pair", "idx_ap_followers_remote_actor")
    _follow_table("ap_follows", "uq_ap_follows_pair", "idx_ap_follows_remote_actor")

    op.create_table(
        "ap_rate_limits",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("key", sa.Text(), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_rate_limits_key_created", "ap_rate_limits", ["key", "created_at"])
    op.create_index("idx_rate_limits_created", "ap_rate_limits", ["created_at"])

    op.create_table(
        "ap_actors",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("handle", sa.Text(), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=False, server_default=""),
        sa.Column("domain", sa.String(length=255), nullable=False),
        sa.Column("inbox_url", sa.Text(), nullable=False),
        sa.Column("outbox_url", sa.Text(), nullable=False),
        sa.Column("followers_url", sa.Text(), nullable=True),
        sa.Column("following_url", sa.Text(), nullable=True),
        sa.Column("shared_inbox_url", sa.Text(), nullable=True),
        sa.Column("public_key_pem", sa.Text(), nullable=False),
        sa.Column("public_key_id", sa.Text(), nullable=True),
        sa.Column("last_fetched_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_ap_actors_domain", "ap_actors", ["domain"])


def downgrade() -> None:
    """Drop all federation tables."""
    op.drop_index("idx_ap_actors_domain", table_name="ap_actors")
    op.drop_table("ap_actors")
    op.drop_index("idx_rate_limits_created", table_name="ap_rate_limits")
    op.drop_index("idx_rate_limits_key_created", table_name="ap_rate_limits")
    op.drop_table("ap_rate_limits")
    op.drop_index("idx_ap_follows_remote_actor", table_name="ap_follows")
    op.drop_table("ap_follows")
    op.drop_index("idx_ap_followers_remote_actor", table_name="ap_followers")
    op.drop_table("ap_followers")
    op.drop_index("idx_ap_inbox_status", table_name="ap_inbox_activities")
    op.drop_index("idx_ap_inbox_user", table_name="ap_inbox_activities")
    op.drop_table("ap_inbox_activities")
    op.drop_index("idx_delivery_queue_status", table_name="ap_delivery_queue")
    op.drop_table("ap_delivery_queue")
    op.drop_index("idx_ap_outbox_created", table_name="ap_outbox_activities")
    op.drop_index("idx_ap_outbox_user", table_name="ap_outbox_activities")
    op.drop_table("ap_outbox_activities")
