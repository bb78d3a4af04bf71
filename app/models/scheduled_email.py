"""ScheduledEmail model: one row per flow step per trigger."""

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, JSONType


class EmailType(str, enum.Enum):
    """Category that decides which opt-outs apply."""

    MARKETING = "marketing"
    TRANSACTIONAL = "transactional"


class ScheduledEmailStatus(str, enum.Enum):
    """Lifecycle of a scheduled step.

    ``pending -> sending -> sent | skipped | failed`` and ``pending | failed -> cancelled``.
    ``sending`` is the claim held by the executor while it works.
    """

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ScheduledEmail(Base):
    """A single email step scheduled for delivery.

    Rows are created in bulk when a flow is triggered and are kept forever
    as the user's email history.
    """

    __tablename__ = "scheduled_emails"
    __table_args__ = (
        Index("ix_scheduled_emails_user_flow", "user_id", "flow_id"),
        Index("ix_scheduled_emails_status_scheduled_at", "status", "scheduled_at"),
        Index(
            "uq_scheduled_emails_pending_step",
            "user_id",
            "flow_id",
            "step_index",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    # Recipient
    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    email_address: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Flow step
    flow_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    step_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    template_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    email_type: Mapped[EmailType] = mapped_column(
        Enum(
            EmailType,
            name="email_type",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=EmailType.MARKETING,
        nullable=False,
    )

    # Scheduling
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    status: Mapped[ScheduledEmailStatus] = mapped_column(
        Enum(
            ScheduledEmailStatus,
            name="scheduled_email_status",
            values_callable=lambda x: [e.value for e in x],
        ),
        default=ScheduledEmailStatus.PENDING,
        nullable=False,
    )
    flow_trigger_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    idempotency_key: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
        unique=True,
    )
    task_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    # Outcome
    provider_email_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    sent_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    cancel_reason: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    skip_reason: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    failure_reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    retry_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    is_test: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    variables: Mapped[dict[str, Any]] = mapped_column(
        JSONType,
        default=dict,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ScheduledEmail {self.flow_id}[{self.step_index}] "
            f"{self.email_address} ({self.status.value})>"
        )
