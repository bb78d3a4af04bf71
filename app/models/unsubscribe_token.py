"""UnsubscribeToken model for single-use email links."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base


class UnsubscribeToken(Base):
    """Opaque token embedded in every marketing email footer.

    A token is valid until ``expires_at`` and can be claimed once;
    ``used_at`` records the claim.
    """

    __tablename__ = "email_unsubscribe_tokens"

    token: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
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
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<UnsubscribeToken {self.email_address} used={self.used_at is not None}>"
