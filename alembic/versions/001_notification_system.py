"""Notification system schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ACTIVE_DEDUPE = "dedupe_key IS NOT NULL AND status <> 'cancelled'"


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "admin_users",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("email", sa.String(255), unique=True, nullable=False, index=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(128), nullable=True),
        sa.Column("is_active", sa.Boolean(), default=True),
        sa.Column("last_login_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "app_settings",
        sa.Column("key", sa.Text(), primary_key=True),
        sa.Column("value_json", _json(), nullable=False),
        sa.Column("updated_by", sa.String(255), nullable=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_table(
        "notification_queue",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("channel", sa.String(64), nullable=False, index=True),
        sa.Column("recipient_id", sa.String(64), nullable=True, index=True),
        sa.Column("recipient_email", sa.String(255), nullable=True),
        sa.Column("recipient_phone", sa.String(32), nullable=True),
        sa.Column("template_name", sa.String(128), nullable=True),
        sa.Column("template_data", _json(), nullable=True),
        sa.Column("correlation_id", sa.String(64), nullable=True, index=True),
        sa.Column("dedupe_key", sa.String(255), nullable=True),
        sa.Column("budget_scope", sa.String(16), nullable=False, server_default="global"),
        sa.Column("budget_scope_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("scheduled_for", sa.DateTime(), nullable=False),
        sa.Column("deadline_at", sa.DateTime(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_failure_type", sa.String(32), nullable=True),
        sa.Column("provider", sa.String(32), nullable=True),
        sa.Column("provider_message_id", sa.String(255), nullable=True, index=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("first_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("failed_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
    )
    op.create_index(
        "uq_notification_queue_dedupe_active",
        "notification_queue",
        ["dedupe_key"],
        unique=True,
        postgresql_where=sa.text(_ACTIVE_DEDUPE),
        sqlite_where=sa.text(_ACTIVE_DEDUPE),
    )
    op.create_index("ix_notification_queue_due", "notification_queue", ["status", "scheduled_for"])
    op.create_table(
        "notification_audit",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column(
            "notification_id",
            sa.Integer(),
            sa.ForeignKey("notification_queue.id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("details", _json(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False, index=True),
    )
    op.create_table(
        "notification_consent",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("customer_id", sa.String(64), nullable=False),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("consent_type", sa.String(64), nullable=False),
        sa.Column("consented", sa.Boolean(), nullable=False),
        sa.Column("consent_source", sa.String(32), nullable=False),
        sa.Column("consent_timestamp", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("updated_by", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_notification_consent_lookup",
        "notification_consent",
        ["customer_id", "channel", "consent_type", "consent_timestamp"],
    )
    op.create_table(
        "notification_suppression",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("email", sa.String(255), nullable=True, index=True),
        sa.Column("phone", sa.String(32), nullable=True, index=True),
        sa.Column("suppression_type", sa.String(32), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("suppressed_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("suppressed_by", sa.String(255), nullable=True),
        sa.Column("reactivation_token", sa.String(64), nullable=True, unique=True),
        sa.Column("reactivated_at", sa.DateTime(), nullable=True),
        sa.Column("reactivated_by", sa.String(255), nullable=True),
        sa.Column("reactivation_reason", sa.Text(), nullable=True),
    )
    op.create_table(
        "notification_budget_tracking",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("scope", sa.String(16), nullable=False, server_default="global"),
        sa.Column("scope_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column("email_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sms_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("email_cost_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sms_cost_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("email_budget_used_pct", sa.Numeric(6, 2), nullable=True),
        sa.Column("sms_budget_used_pct", sa.Numeric(6, 2), nullable=True),
        sa.Column("warning_sent_at", sa.DateTime(), nullable=True),
        sa.Column("hard_cap_reached_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("scope", "scope_id", "year", "month", name="uq_budget_scope_period"),
    )
    op.create_table(
        "notification_dead_letter_queue",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column(
            "original_notification_id",
            sa.Integer(),
            sa.ForeignKey("notification_queue.id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("channel", sa.String(64), nullable=False, index=True),
        sa.Column("recipient_id", sa.String(64), nullable=True),
        sa.Column("recipient_email", sa.String(255), nullable=True),
        sa.Column("recipient_phone", sa.String(32), nullable=True),
        sa.Column("template_name", sa.String(128), nullable=True),
        sa.Column("template_data", _json(), nullable=True),
        sa.Column("correlation_id", sa.String(64), nullable=True),
        sa.Column("budget_scope", sa.String(16), nullable=False, server_default="global"),
        sa.Column("budget_scope_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("failure_reason", sa.Text(), nullable=False),
        sa.Column("failure_details", _json(), nullable=True),
        sa.Column("failure_type", sa.String(32), nullable=False, index=True),
        sa.Column("is_permanent", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("retry_eligible", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("total_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error_message", sa.Text(), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True, index=True),
        sa.Column("resolved_by", sa.String(255), nullable=True),
        sa.Column("resolution_action", sa.String(32), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("retry_notification_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False, index=True),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "notification_webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("provider_event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("notification_id", sa.Integer(), nullable=True, index=True),
        sa.Column("provider_message_id", sa.String(255), nullable=True, index=True),
        sa.Column("recipient", sa.String(255), nullable=True),
        sa.Column("event_data", _json(), nullable=True),
        sa.Column("status", sa.String(64), nullable=True),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("bounce_type", sa.String(16), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("webhook_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(), server_default=sa.func.now(), nullable=False, index=True),
        sa.UniqueConstraint("provider", "provider_event_id", name="uq_webhook_provider_event"),
    )
    op.create_table(
        "notification_retry_config",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("scope", sa.String(16), nullable=False, server_default="global"),
        sa.Column("scope_value", sa.String(64), nullable=False, server_default=""),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("initial_delay_minutes", sa.Integer(), nullable=False, server_default="15"),
        sa.Column("backoff_multiplier", sa.Numeric(4, 2), nullable=False, server_default="2.0"),
        sa.Column("max_delay_minutes", sa.Integer(), nullable=False, server_default="1440"),
        sa.Column("hard_bounce_retries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("soft_bounce_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("timeout_retries", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("rate_limit_retries", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("max_age_hours", sa.Integer(), nullable=False, server_default="48"),
        sa.Column("rate_limit_per_minute", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("rate_limit_burst", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("updated_by", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("scope", "scope_value", name="uq_retry_config_scope"),
    )
    op.execute(
        "INSERT INTO notification_retry_config (scope, scope_value) VALUES ('global', '')"
    )


def downgrade() -> None:
    op.drop_table("notification_retry_config")
    op.drop_table("notification_webhook_events")
    op.drop_table("notification_dead_letter_queue")
    op.drop_table("notification_budget_tracking")
    op.drop_table("notification_suppression")
    op.drop_index("ix_notification_consent_lookup", table_name="notification_consent")
    op.drop_table("notification_consent")
    op.drop_table("notification_audit")
    op.drop_index("ix_notification_queue_due", table_name="notification_queue")
    op.drop_index("uq_notification_queue_dedupe_active", table_name="notification_queue")
    op.drop_table("notification_queue")
    op.drop_table("app_settings")
    op.drop_table("admin_users")
