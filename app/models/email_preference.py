"""EmailPreference model for per-address marketing opt-outs."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base


class EmailPreference(Base):
    """Subscription state for one (user, email address) pair.

    Created on first lookup with ``subscribed=True``. Unsubscribe and
    resubscribe flip the flag; rows are never deleted.
    """

    __tablename__ = "user_email_preferences"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "email_address",
            name="uq_user_email_preferences_user_email",
        ),
    )

    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
    )
    email_address: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    subscribed: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    unsubscribed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    unsubscribe_reason: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    def __repr__(self) -> str:
        state = "subscribed" if self.subscribed else "unsubscribed"
        return f"<EmailPreference {self.email_address} ({state})>"
