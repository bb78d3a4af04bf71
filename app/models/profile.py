"""Profile model: the per-user application row owned by the web app."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base


class Profile(Base):
    """User profile as seen by the email engine.

    Only the columns the engine reads are mapped: the admin flag for
    authorization, and lifecycle state used by step skip conditions.
    """

    __tablename__ = "profiles"

    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
    )
    email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    first_name: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    is_admin: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )

    # Lifecycle
    onboarding_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    subscription_status: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )

    @property
    def has_paid_subscription(self) -> bool:
        return self.subscription_status == "active"

    def __repr__(self) -> str:
        return f"<Profile {self.user_id}>"
