"""Email preferences, unsubscribe tokens and the suppression list."""

import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.email_preference import EmailPreference
from app.models.email_suppression import EmailSuppression
from app.models.scheduled_email import EmailType
from app.models.unsubscribe_token import UnsubscribeToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenInfo:
    """Who an unsubscribe token belongs to."""

    user_id: str
    email_address: str


class PreferenceService:
    """Reads and mutates per-address subscription state."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    async def get_or_create_preferences(self, user_id: str, email_address: str) -> EmailPreference:
        """Return the preference row, creating a subscribed one on first access."""
        stmt = select(EmailPreference).where(
            EmailPreference.user_id == user_id,
            EmailPreference.email_address == email_address,
        )
        preference = (await self.db.execute(stmt)).scalar_one_or_none()
        if preference:
            return preference

        preference = EmailPreference(user_id=user_id, email_address=email_address, subscribed=True)
        self.db.add(preference)
        try:
            await self.db.commit()
        except IntegrityError:
            # Created concurrently; use the winner's row
            await self.db.rollback()
            return (await self.db.execute(stmt)).scalar_one()

        await self.db.refresh(preference)
        logger.info("Created email preferences: user=%s", user_id)
        return preference

    async def is_suppressed(self, email_address: str) -> bool:
        stmt = select(EmailSuppression.id).where(EmailSuppression.email_address == email_address)
        return (await self.db.execute(stmt)).first() is not None

    async def can_send(self, user_id: str, email_address: str, email_type: EmailType) -> bool:
        """Whether an email of this type may go to this address.

        Suppressed addresses receive nothing. Transactional email ignores
        the marketing opt-out.
        """
        if await self.is_suppressed(email_address):
            return False
        if email_type == EmailType.TRANSACTIONAL:
            return True
        preference = await self.get_or_create_preferences(user_id, email_address)
        return preference.subscribed

    async def unsubscribe(
        self,
        user_id: str,
        email_address: str,
        reason: str | None = None,
    ) -> EmailPreference:
        """Opt the address out of marketing email.

        Callers also cancel the user's pending marketing steps
        (``SequenceService.cancel_all_for_user``); the executor re-checks
        the preference at send time either way.
        """
        preference = await self.get_or_create_preferences(user_id, email_address)
        preference.subscribed = False
        preference.unsubscribed_at = datetime.now(UTC)
        preference.unsubscribe_reason = reason
        await self.db.commit()
        logger.info("Unsubscribed: user=%s", user_id)
        return preference

    async def resubscribe(self, user_id: str, email_address: str) -> EmailPreference:
        preference = await self.get_or_create_preferences(user_id, email_address)
        preference.subscribed = True
        preference.unsubscribed_at = None
        preference.unsubscribe_reason = None
        await self.db.commit()
        logger.info("Resubscribed: user=%s", user_id)
        return preference

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def generate_unsubscribe_token(self, user_id: str, email_address: str) -> str:
        """Mint and persist a fresh single-use token."""
        token = secrets.token_hex(32)
        self.db.add(
            UnsubscribeToken(
                token=token,
                user_id=user_id,
                email_address=email_address,
                expires_at=datetime.now(UTC) + timedelta(days=settings.unsubscribe_token_ttl_days),
            )
        )
        await self.db.commit()
        return token

    async def validate_token(self, token: str) -> TokenInfo | None:
        """Return the token's owner, or None if unknown, used, or expired."""
        stmt = select(UnsubscribeToken.user_id, UnsubscribeToken.email_address).where(
            UnsubscribeToken.token == token,
            UnsubscribeToken.used_at.is_(None),
            UnsubscribeToken.expires_at > datetime.now(UTC),
        )
        row = (await self.db.execute(stmt)).first()
        if row is None:
            return None
        return TokenInfo(user_id=row.user_id, email_address=row.email_address)

    async def mark_token_as_used(self, token: str) -> bool:
        """Claim the token. Returns True only for the one caller that wins."""
        now = datetime.now(UTC)
        stmt = (
            update(UnsubscribeToken)
            .where(
                UnsubscribeToken.token == token,
                UnsubscribeToken.used_at.is_(None),
                UnsubscribeToken.expires_at > now,
            )
            .values(used_at=now)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount == 1  # type: ignore[attr-defined]

    # ------------------------------------------------------------------
    # Suppression list
    # ------------------------------------------------------------------

    async def suppress(self, email_address: str, reason: str) -> bool:
        """Add an address to the suppression list. Returns False if already there."""
        if await self.is_suppressed(email_address):
            return False

        self.db.add(EmailSuppression(email_address=email_address, reason=reason))
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            return False

        logger.warning("Suppressed address: email=%s reason=%s", email_address, reason)
        return True
