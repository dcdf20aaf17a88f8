"""Create webhooks and webhook_deliveries tables.

Revision ID: 001
Revises:
Create Date: 2026-03-01

Adds:
- webhooks - tenant-scoped endpoint subscriptions with signing secret,
  static headers, retry policy and rolling delivery health
- webhook_deliveries - the delivery ledger; one row per (event, webhook),
  tracked through retries until a terminal state
  - webhook_id is a plain column (no FK) so history survives webhook deletion

Indexes:
- ix_webhooks_organization_id - listing webhooks per organization
- ix_webhook_org_active - event matching (active webhooks of an organization)
- ix_webhook_deliveries_webhook_id - delivery history per webhook
- ix_delivery_status_retry - worker selection of PENDING / due RETRYING rows
- ix_delivery_webhook_created - paginated history, newest first
- ix_delivery_org_created - organization statistics
- ix_delivery_status_completed - retention purge
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create webhook tables with indexes."""

    op.create_table(
        "webhooks",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            nullable=False,
            comment="Owning organization (tenant)",
        ),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "url",
            sa.Text(),
            nullable=False,
            comment="http(s) endpoint that receives event payloads",
        ),
        sa.Column(
            "events",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
            comment="Event subscriptions: [{event, enabled, filters}]",
        ),
        sa.Column(
            "is_active",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
            comment="Inactive webhooks are skipped by event matching and test delivery",
        ),
        sa.Column(
            "secret",
            sa.String(256),
            nullable=True,
            comment="HMAC-SHA256 key; no signature header is sent when empty",
        ),
        sa.Column(
            "headers",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
            comment="Static headers added to every delivery",
        ),
        sa.Column("retry_policy", postgresql.JSONB(), nullable=False),

        # Rolling delivery health
        sa.Column("delivery_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_delivery_attempt", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_successful_delivery", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_failed_delivery", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),

        sa.Column("created_by", sa.String(255), nullable=True),
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

    op.create_index("ix_webhooks_organization_id", "webhooks", ["organization_id"])
    op.create_index("ix_webhook_org_active", "webhooks", ["organization_id", "is_active"])

    op.create_table(
        "webhook_deliveries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("webhook_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            nullable=False,
            comment="Copied from the webhook at enqueue time",
        ),
        sa.Column(
            "event",
            sa.String(128),
            nullable=False,
            comment="Event type that triggered this delivery",
        ),
        sa.Column(
            "payload",
            postgresql.JSONB(),
            nullable=False,
            comment="Full envelope delivered to the endpoint (immutable)",
        ),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column(
            "attempts",
            sa.Integer(),
            nullable=False,
            server_default="0",
            comment="Failed attempts so far",
        ),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column(
            "next_retry_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="When a RETRYING delivery becomes due",
        ),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "last_attempt_status",
            sa.Integer(),
            nullable=True,
            comment="HTTP status of the last attempt; 0 for transport failures",
        ),
        sa.Column(
            "last_attempt_response",
            sa.Text(),
            nullable=True,
            comment="Truncated response body or error text",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "completed_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="Set exactly when the delivery reaches a terminal state",
        ),
    )

    op.create_index(
        "ix_webhook_deliveries_webhook_id", "webhook_deliveries", ["webhook_id"]
    )
    op.create_index(
        "ix_delivery_status_retry", "webhook_deliveries", ["status", "next_retry_at"]
    )
    op.create_index(
        "ix_delivery_webhook_created", "webhook_deliveries", ["webhook_id", "created_at"]
    )
    op.create_index(
        "ix_delivery_org_created", "webhook_deliveries", ["organization_id", "created_at"]
    )
    op.create_index(
        "ix_delivery_status_completed", "webhook_deliveries", ["status", "completed_at"]
    )


def downgrade() -> None:
    """Drop webhook tables and their indexes."""
    op.drop_index("ix_delivery_status_completed", table_name="webhook_deliveries")
    op.drop_index("ix_delivery_org_created", table_name="webhook_deliveries")
    op.drop_index("ix_delivery_webhook_created", table_name="webhook_deliveries")
    op.drop_index("ix_delivery_status_retry", table_name="webhook_deliveries")
    op.drop_index("ix_webhook_deliveries_webhook_id", table_name="webhook_deliveries")
    op.drop_table("webhook_deliveries")

    op.drop_index("ix_webhook_org_active", table_name="webhooks")
    op.drop_index("ix_webhooks_organization_id", table_name="webhooks")
    op.drop_table("webhooks")
