"""Records Resend delivery events and maintains the suppression list."""

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.email_event import EmailEvent
from app.models.scheduled_email import ScheduledEmail
from app.services.preference_service import PreferenceService
from app.services.tracking import track_event

logger = logging.getLogger(__name__)

# Resend event type -> stored event type
EVENT_TYPES = {
    "email.sent": "provider_sent",
    "email.delivered": "delivered",
    "email.delivery_delayed": "delivery_delayed",
    "email.opened": "opened",
    "email.clicked": "clicked",
    "email.bounced": "bounced",
    "email.complained": "complained",
}

SUPPRESSING_EVENTS = {"bounced", "complained"}


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return datetime.now(UTC)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.now(UTC)


class WebhookService:
    """Processes verified Resend webhook payloads."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def process_event(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Store one provider event. Redeliveries of the same event are ignored."""
        resend_type = str(payload.get("type", ""))
        event_type = EVENT_TYPES.get(resend_type)
        if event_type is None:
            return {"status": "ignored", "reason": f"unhandled type {resend_type}"}

        data = payload.get("data")
        if not isinstance(data, dict):
            return {"status": "ignored", "reason": "malformed data"}
        provider_email_id = data.get("email_id")
        if not provider_email_id:
            return {"status": "ignored", "reason": "no email id"}

        recipients = data.get("to") or []
        if isinstance(recipients, str):
            recipients = [recipients]

        scheduled = (
            await self.db.execute(
                select(ScheduledEmail).where(ScheduledEmail.provider_email_id == provider_email_id)
            )
        ).scalar_one_or_none()

        metadata: dict[str, Any] = {"subject": data.get("subject")}
        if event_type == "clicked":
            click = data.get("click")
            metadata["link"] = click.get("link") if isinstance(click, dict) else None
        if event_type == "bounced":
            metadata["bounce"] = data.get("bounce")

        self.db.add(
            EmailEvent(
                scheduled_email_id=scheduled.id if scheduled else None,
                user_id=scheduled.user_id if scheduled else None,
                email_address=scheduled.email_address if scheduled else (recipients or [None])[0],
                event_type=event_type,
                provider_email_id=provider_email_id,
                occurred_at=_parse_timestamp(payload.get("created_at")),
                metadata_=metadata,
            )
        )
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info("Duplicate webhook event: email=%s type=%s", provider_email_id, event_type)
            return {"status": "duplicate", "event_type": event_type}

        if event_type in SUPPRESSING_EVENTS:
            preferences = PreferenceService(self.db)
            for address in recipients:
                await preferences.suppress(address, reason=event_type)

        if scheduled:
            track_event(
                f"email_{event_type}",
                scheduled.user_id,
                {"flow_id": scheduled.flow_id, "step_index": scheduled.step_index},
            )

        logger.info("Recorded webhook event: email=%s type=%s", provider_email_id, event_type)
        return {"status": "processed", "event_type": event_type}
