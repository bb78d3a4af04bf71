"""Executes one scheduled email step when its job fires."""

import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from jinja2 import TemplateError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import DeliveryError, NotFoundError
from app.models.email_event import EmailEvent
from app.models.scheduled_email import EmailType, ScheduledEmail, ScheduledEmailStatus
from app.services.email_service import EmailService
from app.services.flow_registry import FlowRegistry, FlowStep, get_flow_registry
from app.services.preference_service import PreferenceService
from app.services.template_service import TemplateRenderer, get_template_renderer
from app.services.tracking import track_event

logger = logging.getLogger(__name__)

# Statuses a fired job may claim. FAILED is claimable so worker retries can redeliver.
CLAIMABLE_STATUSES = (ScheduledEmailStatus.PENDING, ScheduledEmailStatus.FAILED)


class StepExecutor:
    """Claims a scheduled email, decides whether to send it, and records the outcome.

    Jobs are delivered at least once. The status claim (an atomic
    ``UPDATE ... WHERE status IN (pending, failed)``) guarantees a step is
    processed by one invocation at a time and that a sent, skipped or
    cancelled step is never sent again.
    """

    def __init__(
        self,
        db: AsyncSession,
        registry: FlowRegistry | None = None,
        renderer: TemplateRenderer | None = None,
        email_service: EmailService | None = None,
    ) -> None:
        self.db = db
        self.registry = registry or get_flow_registry()
        self.renderer = renderer or get_template_renderer()
        self.email_service = email_service or EmailService()
        self.preferences = PreferenceService(db)

    async def execute(self, scheduled_email_id: UUID) -> dict[str, Any]:
        if not await self._claim(scheduled_email_id):
            logger.info("Scheduled email %s not claimable, skipping", scheduled_email_id)
            return {"status": "noop", "scheduled_email_id": str(scheduled_email_id)}

        stmt = (
            select(ScheduledEmail)
            .where(ScheduledEmail.id == scheduled_email_id)
            .execution_options(populate_existing=True)
        )
        email = (await self.db.execute(stmt)).scalar_one()

        try:
            return await self._process(email)
        except DeliveryError:
            raise
        except Exception as e:
            # Release the claim so the worker retry can pick the row up again
            logger.exception("Scheduled email %s errored while sending", email.id)
            await self.db.rollback()
            await self.db.refresh(email)
            await self._mark_failed(email, f"{type(e).__name__}: {e}")
            raise

    async def _process(self, email: ScheduledEmail) -> dict[str, Any]:
        step = self._get_step(email)
        if step is None:
            return await self._mark_skipped(email, "unknown_step")

        if step.skip_condition is not None and await step.skip_condition(self.db, email):
            return await self._mark_skipped(email, "skip_condition")

        if await self.preferences.is_suppressed(email.email_address):
            return await self._mark_skipped(email, "suppressed")
        if not await self.preferences.can_send(email.user_id, email.email_address, email.email_type):
            return await self._mark_skipped(email, "unsubscribed")

        unsubscribe_url = None
        if email.email_type == EmailType.MARKETING:
            token = await self.preferences.generate_unsubscribe_token(
                email.user_id, email.email_address
            )
            unsubscribe_url = f"{settings.app_url}/unsubscribe/{token}"

        try:
            rendered = self.renderer.render(email.template_id, email.variables, unsubscribe_url)
        except (NotFoundError, TemplateError) as e:
            # Retrying cannot fix a broken template
            await self._mark_failed(email, f"render error: {e}")
            return {"status": "failed", "scheduled_email_id": str(email.id), "reason": "render"}

        provider_email_id = await self.email_service.send_email(
            to_email=email.email_address,
            subject=rendered.subject,
            html_content=rendered.html,
            tags=[
                {"name": "flow_id", "value": email.flow_id},
                {"name": "step", "value": str(email.step_index)},
                {"name": "template", "value": email.template_id},
            ],
            idempotency_key=email.idempotency_key,
        )

        if provider_email_id is None:
            await self._mark_failed(email, "provider rejected or unreachable")
            raise DeliveryError(
                f"Failed to deliver scheduled email {email.id}",
                details={"attempt": email.retry_count},
            )

        return await self._mark_sent(email, provider_email_id, rendered.subject)

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def _claim(self, scheduled_email_id: UUID) -> bool:
        stmt = (
            update(ScheduledEmail)
            .where(
                ScheduledEmail.id == scheduled_email_id,
                ScheduledEmail.status.in_(CLAIMABLE_STATUSES),
            )
            .values(status=ScheduledEmailStatus.SENDING)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount == 1  # type: ignore[attr-defined]

    def _get_step(self, email: ScheduledEmail) -> FlowStep | None:
        try:
            flow = self.registry.get(email.flow_id)
        except NotFoundError:
            logger.warning("Flow %s no longer registered", email.flow_id)
            return None
        if email.step_index >= len(flow.steps):
            return None
        return flow.steps[email.step_index]

    async def _mark_sent(
        self, email: ScheduledEmail, provider_email_id: str, subject: str
    ) -> dict[str, Any]:
        now = datetime.now(UTC)
        email.status = ScheduledEmailStatus.SENT
        email.sent_at = now
        email.provider_email_id = provider_email_id
        email.failure_reason = None
        self._record(email, "sent", now, {"subject": subject}, provider_email_id=provider_email_id)
        await self.db.commit()

        logger.info(
            "Sent scheduled email: id=%s flow=%s step=%s",
            email.id,
            email.flow_id,
            email.step_index,
        )
        track_event(
            "email_sent",
            email.user_id,
            {"flow_id": email.flow_id, "step_index": email.step_index, "template_id": email.template_id},
        )
        return {
            "status": "sent",
            "scheduled_email_id": str(email.id),
            "provider_email_id": provider_email_id,
        }

    async def _mark_skipped(self, email: ScheduledEmail, reason: str) -> dict[str, Any]:
        email.status = ScheduledEmailStatus.SKIPPED
        email.skip_reason = reason
        self._record(email, "skipped", datetime.now(UTC), {"reason": reason})
        await self.db.commit()

        logger.info("Skipped scheduled email: id=%s reason=%s", email.id, reason)
        track_event(
            "email_skipped",
            email.user_id,
            {"flow_id": email.flow_id, "step_index": email.step_index, "reason": reason},
        )
        return {"status": "skipped", "scheduled_email_id": str(email.id), "reason": reason}

    async def _mark_failed(self, email: ScheduledEmail, reason: str) -> None:
        email.status = ScheduledEmailStatus.FAILED
        email.failure_reason = reason
        email.retry_count += 1
        self._record(email, "failed", datetime.now(UTC), {"reason": reason})
        await self.db.commit()

        logger.error("Scheduled email failed: id=%s reason=%s", email.id, reason)
        track_event(
            "email_failed",
            email.user_id,
            {"flow_id": email.flow_id, "step_index": email.step_index},
        )

    def _record(
        self,
        email: ScheduledEmail,
        event_type: str,
        occurred_at: datetime,
        metadata: dict[str, Any],
        provider_email_id: str | None = None,
    ) -> None:
        self.db.add(
            EmailEvent(
                scheduled_email_id=email.id,
                user_id=email.user_id,
                email_address=email.email_address,
                event_type=event_type,
                provider_email_id=provider_email_id,
                occurred_at=occurred_at,
                metadata_={"flow_id": email.flow_id, "step_index": email.step_index, **metadata},
            )
        )
