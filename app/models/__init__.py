"""SQLAlchemy models."""

from app.models.base import Base
from app.models.email_event import EmailEvent
from app.models.email_preference import EmailPreference
from app.models.email_suppression import EmailSuppression
from app.models.profile import Profile
from app.models.scheduled_email import EmailType, ScheduledEmail, ScheduledEmailStatus
from app.models.unsubscribe_token import UnsubscribeToken

__all__ = [
    # Base
    "Base",
    # Users
    "Profile",
    # Preferences
    "EmailPreference",
    "EmailSuppression",
    "UnsubscribeToken",
    # Sequences
    "ScheduledEmail",
    "ScheduledEmailStatus",
    "EmailType",
    "EmailEvent",
]
