"""Initial schema for lifecycle email sequences.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:  # type: ignore[type-arg]
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    # Enum types
    op.execute("CREATE TYPE email_type AS ENUM ('marketing', 'transactional')")
    op.execute(
        "CREATE TYPE scheduled_email_status AS ENUM "
        "('pending', 'sending', 'sent', 'skipped', 'cancelled', 'failed')"
    )

    # Profiles (read by admin check and skip conditions)
    op.create_table(
        "profiles",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("first_name", sa.String(255), nullable=True),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("onboarding_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("subscription_status", sa.String(50), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_profiles")),
        sa.UniqueConstraint("user_id", name=op.f("uq_profiles_user_id")),
    )

    # Email preferences
    op.create_table(
        "user_email_preferences",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("email_address", sa.String(255), nullable=False),
        sa.Column("subscribed", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("unsubscribed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("unsubscribe_reason", sa.String(255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_user_email_preferences")),
        sa.UniqueConstraint(
            "user_id", "email_address", name="uq_user_email_preferences_user_email"
        ),
    )
    op.create_index(
        "ix_user_email_preferences_user_id", "user_email_preferences", ["user_id"]
    )

    # Unsubscribe tokens
    op.create_table(
        "email_unsubscribe_tokens",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("token", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("email_address", sa.String(255), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_email_unsubscribe_tokens")),
        sa.UniqueConstraint("token", name=op.f("uq_email_unsubscribe_tokens_token")),
    )
    op.create_index(
        "ix_email_unsubscribe_tokens_user_id", "email_unsubscribe_tokens", ["user_id"]
    )

    # Suppression list
    op.create_table(
        "email_suppressions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("email_address", sa.String(255), nullable=False),
        sa.Column("reason", sa.String(50), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_email_suppressions")),
        sa.UniqueConstraint("email_address", name=op.f("uq_email_suppressions_email_address")),
    )

    # Scheduled emails
    op.create_table(
        "scheduled_emails",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("email_address", sa.String(255), nullable=False),
        sa.Column("flow_id", sa.String(100), nullable=False),
        sa.Column("step_index", sa.Integer(), nullable=False),
        sa.Column("template_id", sa.String(100), nullable=False),
        sa.Column(
            "email_type",
            postgresql.ENUM(name="email_type", create_type=False),
            nullable=False,
            server_default="marketing",
        ),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status",
            postgresql.ENUM(name="scheduled_email_status", create_type=False),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("flow_trigger_id", sa.String(255), nullable=False),
        sa.Column("idempotency_key", sa.String(512), nullable=False),
        sa.Column("task_id", sa.String(255), nullable=True),
        sa.Column("provider_email_id", sa.String(255), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.String(255), nullable=True),
        sa.Column("skip_reason", sa.String(255), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_test", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("variables", postgresql.JSONB(), nullable=False, server_default="{}"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_scheduled_emails")),
        sa.UniqueConstraint(
            "idempotency_key", name=op.f("uq_scheduled_emails_idempotency_key")
        ),
    )
    op.create_index("ix_scheduled_emails_user_flow", "scheduled_emails", ["user_id", "flow_id"])
    op.create_index(
        "ix_scheduled_emails_status_scheduled_at", "scheduled_emails", ["status", "scheduled_at"]
    )
    op.create_index(
        "ix_scheduled_emails_flow_trigger_id", "scheduled_emails", ["flow_trigger_id"]
    )
    # At most one pending row per (user, flow, step)
    op.create_index(
        "uq_scheduled_emails_pending_step",
        "scheduled_emails",
        ["user_id", "flow_id", "step_index"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    # Email events (history + provider webhooks)
    op.create_table(
        "email_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("scheduled_email_id", sa.UUID(), nullable=True),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("email_address", sa.String(255), nullable=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("provider_email_id", sa.String(255), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default="{}"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_email_events")),
        sa.ForeignKeyConstraint(
            ["scheduled_email_id"],
            ["scheduled_emails.id"],
            name=op.f("fk_email_events_scheduled_email_id_scheduled_emails"),
            ondelete="SET NULL",
        ),
        sa.UniqueConstraint(
            "provider_email_id",
            "event_type",
            "occurred_at",
            name="uq_email_events_provider_type_time",
        ),
    )
    op.create_index("ix_email_events_scheduled_email_id", "email_events", ["scheduled_email_id"])
    op.create_index("ix_email_events_user_id", "email_events", ["user_id"])
    op.create_index("ix_email_events_event_type", "email_events", ["event_type"])


def downgrade() -> None:
    op.drop_table("email_events")
    op.drop_table("scheduled_emails")
    op.drop_table("email_suppressions")
    op.drop_table("email_unsubscribe_tokens")
    op.drop_table("user_email_preferences")
    op.drop_table("profiles")
    op.execute("DROP TYPE IF EXISTS scheduled_email_status")
    op.execute("DROP TYPE IF EXISTS email_type")
