"""Webhook automation tables.

Revision ID: 001_webhooks
Revises:
Create Date: 2026-10-19

Creates six tables:
- webhooks: outbound subscriptions with retry policy and failure streak
- webhook_logs: one row per outbound attempt, grouped by event_id lineage
- inbound_webhooks: receive endpoints addressed by secret token
- inbound_webhook_logs: one row per inbound request
- deals: leads created by inbound ingestion
- offline_conversions: ad platform conversion uploads, unique per deal
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSON, JSONB, UUID

# revision identifiers, used by Alembic.
revision: str = "001_webhooks"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
    )


def _created_at_column() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )


def upgrade() -> None:
    op.create_table(
        "webhooks",
        _id_column(),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("url", sa.String(2000), nullable=False),
        sa.Column("method", sa.String(10), server_default="POST", nullable=False),
        sa.Column("headers", JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        sa.Column("events", JSONB(), server_default=sa.text("'[]'::jsonb"), nullable=False),
        sa.Column("secret_key", sa.String(500), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("ip_whitelist", JSON(), nullable=True),
        sa.Column("retry_enabled", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("max_retries", sa.Integer(), server_default=sa.text("3"), nullable=False),
        sa.Column("consecutive_failures", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _created_at_column(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "webhook_logs",
        _id_column(),
        sa.Column(
            "webhook_id",
            UUID(as_uuid=True),
            sa.ForeignKey("webhooks.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_id", sa.String(200), nullable=False),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("payload", JSON(), nullable=False),
        sa.Column("attempt", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("response_status", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        _created_at_column(),
    )
    op.create_index("ix_webhook_logs_webhook_created", "webhook_logs", ["webhook_id", "created_at"])
    op.create_index(
        "ix_webhook_logs_lineage", "webhook_logs", ["webhook_id", "event_id", "attempt"]
    )
    op.create_index("ix_webhook_logs_status_created", "webhook_logs", ["status", "created_at"])

    op.create_table(
        "inbound_webhooks",
        _id_column(),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("pipeline_id", sa.String(100), nullable=False),
        sa.Column("phase_id", sa.String(100), nullable=True),
        sa.Column("secret_token", sa.String(200), unique=True, nullable=False),
        sa.Column("hmac_secret", sa.String(500), nullable=True),
        sa.Column("field_mappings", JSON(), server_default=sa.text("'[]'::json"), nullable=False),
        sa.Column("default_tags", JSON(), server_default=sa.text("'[]'::json"), nullable=False),
        sa.Column("default_temperature", sa.String(10), server_default="warm", nullable=False),
        sa.Column("ip_whitelist", JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("requests_today", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_request_at", sa.DateTime(timezone=True), nullable=True),
        _created_at_column(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "inbound_webhook_logs",
        _id_column(),
        sa.Column(
            "inbound_webhook_id",
            UUID(as_uuid=True),
            sa.ForeignKey("inbound_webhooks.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("source_ip", sa.String(100), nullable=True),
        sa.Column("payload", JSON(), nullable=False),
        sa.Column("mapped_data", JSON(), nullable=True),
        sa.Column("deal_created_id", UUID(as_uuid=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        _created_at_column(),
    )
    op.create_index(
        "ix_inbound_logs_webhook_created",
        "inbound_webhook_logs",
        ["inbound_webhook_id", "created_at"],
    )

    op.create_table(
        "deals",
        _id_column(),
        sa.Column("pipeline_id", sa.String(100), nullable=False),
        sa.Column("phase_id", sa.String(100), nullable=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("contact_name", sa.String(300), nullable=False),
        sa.Column("email", sa.String(300), nullable=True),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("company", sa.String(300), nullable=True),
        sa.Column("value", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("tags", JSON(), server_default=sa.text("'[]'::json"), nullable=False),
        sa.Column("temperature", sa.String(10), server_default="warm", nullable=False),
        sa.Column("source", sa.String(100), server_default="Webhook", nullable=False),
        sa.Column(
            "inbound_webhook_id",
            UUID(as_uuid=True),
            sa.ForeignKey("inbound_webhooks.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("identity_email", sa.String(300), nullable=True),
        sa.Column("identity_phone", sa.String(50), nullable=True),
        sa.Column("raw_payload", JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        _created_at_column(),
    )
    op.create_index(
        "ix_deals_inbound_email", "deals", ["inbound_webhook_id", "identity_email", "created_at"]
    )
    op.create_index(
        "ix_deals_inbound_phone", "deals", ["inbound_webhook_id", "identity_phone", "created_at"]
    )

    op.create_table(
        "offline_conversions",
        _id_column(),
        sa.Column("deal_id", sa.String(100), unique=True, nullable=False),
        sa.Column("gclid", sa.String(500), nullable=False),
        sa.Column("conversion_name", sa.String(200), nullable=False),
        sa.Column("conversion_value", sa.Float(), nullable=False),
        sa.Column("conversion_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("platform_response", JSON(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        _created_at_column(),
    )


def downgrade() -> None:
    op.drop_table("offline_conversions")
    op.drop_index("ix_deals_inbound_phone", table_name="deals")
    op.drop_index("ix_deals_inbound_email", table_name="deals")
    op.drop_table("deals")
    op.drop_index("ix_inbound_logs_webhook_created", table_name="inbound_webhook_logs")
    op.drop_table("inbound_webhook_logs")
    op.drop_table("inbound_webhooks")
    op.drop_index("ix_webhook_logs_status_created", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_lineage", table_name="webhook_logs")
    op.drop_index("ix_webhook_logs_webhook_created", table_name="webhook_logs")
    op.drop_table("webhook_logs")
    op.drop_table("webhooks")
