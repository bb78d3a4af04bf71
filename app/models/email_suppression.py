"""EmailSuppression model for addresses the provider reported as undeliverable."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base


class EmailSuppression(Base):
    """Address that must not receive any email (bounced, complained, or manual)."""

    __tablename__ = "email_suppressions"

    email_address: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
    )
    reason: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<EmailSuppression {self.email_address} ({self.reason})>"
