"""EmailEvent model: send history and provider delivery events."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, JSONType


class EmailEvent(Base):
    """One thing that happened to an email.

    Internal events (scheduled, sent, skipped, cancelled, failed) are written
    by the engine. Provider events (delivered, opened, clicked, bounced,
    complained) come from the Resend webhook and are unique per
    (provider email, type, timestamp) so redeliveries are stored once.
    """

    __tablename__ = "email_events"
    __table_args__ = (
        UniqueConstraint(
            "provider_email_id",
            "event_type",
            "occurred_at",
            name="uq_email_events_provider_type_time",
        ),
    )

    scheduled_email_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("scheduled_emails.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    user_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    email_address: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    event_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )
    provider_email_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONType,
        default=dict,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<EmailEvent {self.event_type} email={self.scheduled_email_id}>"
