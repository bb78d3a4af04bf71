"""Triggers and cancels lifecycle email sequences."""

import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import distinct, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError, ValidationError
from app.core.feature_flags import FeatureFlags, get_feature_flags
from app.models.email_event import EmailEvent
from app.models.profile import Profile
from app.models.scheduled_email import EmailType, ScheduledEmail, ScheduledEmailStatus
from app.schemas.email import FlowStatsResponse
from app.services.flow_registry import FlowRegistry, get_flow_registry
from app.services.preference_service import PreferenceService
from app.workers.scheduler import SequenceScheduler, get_scheduler

logger = logging.getLogger(__name__)

# Lifecycle event that cancels every outstanding email for the user
ACCOUNT_DELETED_EVENT = "account_deleted"

# Statuses that still lead to a send: waiting for their job, or waiting for a worker retry
CANCELLABLE_STATUSES = (ScheduledEmailStatus.PENDING, ScheduledEmailStatus.FAILED)


def generate_flow_trigger_id(user_id: str, flow_id: str, trigger_event_id: str | None = None) -> str:
    """Identify one instantiation of a flow for a user.

    The same trigger event always maps to the same id, so a retried trigger
    finds the rows it already created.
    """
    suffix = trigger_event_id or uuid.uuid4().hex
    return f"{user_id}_{flow_id}_{suffix}"


def build_idempotency_key(user_id: str, flow_id: str, step_index: int, flow_trigger_id: str) -> str:
    return f"{user_id}:{flow_id}:{step_index}:{flow_trigger_id}"


class SequenceService:
    """Schedules flow steps as ``ScheduledEmail`` rows and cancels pending ones."""

    def __init__(
        self,
        db: AsyncSession,
        registry: FlowRegistry | None = None,
        scheduler: SequenceScheduler | None = None,
        flags: FeatureFlags | None = None,
    ) -> None:
        self.db = db
        self.registry = registry or get_flow_registry()
        self.scheduler = scheduler or get_scheduler()
        self.flags = flags or get_feature_flags()
        self.preferences = PreferenceService(db)

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    async def trigger_sequence(
        self,
        user_id: str,
        flow_id: str,
        email_address: str,
        trigger_event_id: str | None = None,
        variables: dict[str, Any] | None = None,
        is_test: bool = False,
    ) -> list[ScheduledEmail]:
        """Schedule every step of a flow for a user.

        Returns the scheduled rows. Returns the existing rows unchanged when
        this trigger was already processed, and an empty list when the user
        cannot receive the flow's email.
        """
        flow = self.registry.get(flow_id)

        if not self.flags.email_sequences_enabled:
            logger.info("Email sequences disabled, not triggering %s for %s", flow_id, user_id)
            return []

        flow_trigger_id = generate_flow_trigger_id(user_id, flow_id, trigger_event_id)
        existing = await self._get_by_trigger(flow_trigger_id)
        if existing:
            logger.info("Sequence already scheduled: trigger=%s", flow_trigger_id)
            return existing

        if flow.sends_marketing and not await self.preferences.can_send(
            user_id, email_address, EmailType.MARKETING
        ):
            logger.info("User %s cannot receive marketing email, skipping %s", user_id, flow_id)
            return []

        # One live sequence per (user, flow)
        replaced = await self._mark_cancelled(
            [ScheduledEmail.user_id == user_id, ScheduledEmail.flow_id == flow_id],
            reason="retriggered",
        )

        merged_variables = {"first_name": await self._get_first_name(user_id), **(variables or {})}
        now = datetime.now(UTC)
        multiplier = self.flags.time_multiplier
        emails = [
            ScheduledEmail(
                user_id=user_id,
                email_address=email_address,
                flow_id=flow_id,
                step_index=index,
                template_id=step.template_id,
                email_type=step.email_type,
                scheduled_at=now + step.delay * multiplier,
                status=ScheduledEmailStatus.PENDING,
                flow_trigger_id=flow_trigger_id,
                idempotency_key=build_idempotency_key(user_id, flow_id, index, flow_trigger_id),
                is_test=is_test or self.flags.email_test_mode,
                variables=merged_variables,
            )
            for index, step in enumerate(flow.steps)
        ]
        self.db.add_all(emails)
        await self.db.flush()
        self.db.add_all(
            EmailEvent(
                scheduled_email_id=email.id,
                user_id=user_id,
                email_address=email_address,
                event_type="scheduled",
                occurred_at=now,
                metadata_={"flow_id": flow_id, "step_index": email.step_index},
            )
            for email in emails
        )

        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent call with the same trigger won the insert
            await self.db.rollback()
            existing = await self._get_by_trigger(flow_trigger_id)
            if existing:
                return existing
            raise

        self._revoke([task_id for _, task_id in replaced])

        for email in emails:
            try:
                email.task_id = self.scheduler.schedule(email)
            except Exception:
                # Row stays pending; the requeue sweep picks it up
                logger.exception("Failed to schedule email %s", email.id)
        await self.db.commit()

        logger.info(
            "Sequence triggered: flow=%s user=%s trigger=%s steps=%d replaced=%d",
            flow_id,
            user_id,
            flow_trigger_id,
            len(emails),
            len(replaced),
        )
        return emails

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel_sequence(
        self,
        flow_trigger_id: str | None = None,
        user_id: str | None = None,
        flow_id: str | None = None,
        reason: str = "cancelled",
    ) -> int:
        """Cancel outstanding steps of one trigger, or of one (user, flow) pair.

        Exactly one target form must be given. Returns the number of rows
        cancelled; rows already sent, skipped or cancelled are left alone.
        """
        if flow_trigger_id and (user_id or flow_id):
            raise ValidationError("Provide either flow_trigger_id or user_id and flow_id, not both")
        if flow_trigger_id:
            conditions = [ScheduledEmail.flow_trigger_id == flow_trigger_id]
        elif user_id and flow_id:
            conditions = [ScheduledEmail.user_id == user_id, ScheduledEmail.flow_id == flow_id]
        else:
            raise ValidationError("Provide flow_trigger_id, or both user_id and flow_id")

        cancelled = await self._mark_cancelled(conditions, reason=reason)
        await self.db.commit()
        self._revoke([task_id for _, task_id in cancelled])

        logger.info(
            "Sequence cancelled: trigger=%s user=%s flow=%s count=%d",
            flow_trigger_id,
            user_id,
            flow_id,
            len(cancelled),
        )
        return len(cancelled)

    async def cancel_all_for_user(
        self,
        user_id: str,
        reason: str = "cancelled",
        email_type: EmailType | None = None,
    ) -> int:
        """Cancel every outstanding step for a user across flows."""
        conditions = [ScheduledEmail.user_id == user_id]
        if email_type is not None:
            conditions.append(ScheduledEmail.email_type == email_type)

        cancelled = await self._mark_cancelled(conditions, reason=reason)
        await self.db.commit()
        self._revoke([task_id for _, task_id in cancelled])

        logger.info("Cancelled all sequences: user=%s count=%d", user_id, len(cancelled))
        return len(cancelled)

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    async def handle_event(
        self,
        user_id: str,
        event_name: str,
        email_address: str | None = None,
        trigger_event_id: str | None = None,
        variables: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Route an application event to the flows it triggers or cancels."""
        result: dict[str, Any] = {"event": event_name, "triggered": {}, "cancelled": {}}

        if event_name == ACCOUNT_DELETED_EVENT:
            result["cancelled"]["*"] = await self.cancel_all_for_user(user_id, reason=event_name)
            return result

        for flow in self.registry.flows_cancelled_by(event_name):
            result["cancelled"][flow.flow_id] = await self.cancel_sequence(
                user_id=user_id, flow_id=flow.flow_id, reason=event_name
            )

        for flow in self.registry.flows_for_trigger(event_name):
            if not email_address:
                logger.warning("No email address for %s, not triggering %s", user_id, flow.flow_id)
                continue
            emails = await self.trigger_sequence(
                user_id,
                flow.flow_id,
                email_address,
                trigger_event_id=trigger_event_id,
                variables=variables,
            )
            result["triggered"][flow.flow_id] = len(emails)

        return result

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def list_scheduled_emails(
        self,
        page: int,
        page_size: int,
        user_id: str | None = None,
        flow_id: str | None = None,
        status: ScheduledEmailStatus | None = None,
    ) -> tuple[list[ScheduledEmail], int]:
        """Paginated email history, newest schedule first."""
        conditions = []
        if user_id:
            conditions.append(ScheduledEmail.user_id == user_id)
        if flow_id:
            conditions.append(ScheduledEmail.flow_id == flow_id)
        if status:
            conditions.append(ScheduledEmail.status == status)

        count_stmt = select(func.count()).select_from(ScheduledEmail).where(*conditions)
        total = (await self.db.execute(count_stmt)).scalar() or 0

        stmt = (
            select(ScheduledEmail)
            .where(*conditions)
            .order_by(ScheduledEmail.scheduled_at.desc(), ScheduledEmail.step_index.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def get_flow_stats(self) -> list[FlowStatsResponse]:
        """Per-flow counts by status plus active instances and unique users."""
        stats = {
            flow.flow_id: FlowStatsResponse(flow_id=flow.flow_id, name=flow.name)
            for flow in self.registry.all()
        }

        status_stmt = select(
            ScheduledEmail.flow_id,
            ScheduledEmail.status,
            ScheduledEmail.is_test,
            func.count(),
        ).group_by(ScheduledEmail.flow_id, ScheduledEmail.status, ScheduledEmail.is_test)
        for flow_id, status, is_test, count in (await self.db.execute(status_stmt)).all():
            entry = stats.get(flow_id)
            if entry is None:
                continue
            key = status.value if isinstance(status, ScheduledEmailStatus) else str(status)
            entry.by_status[key] = entry.by_status.get(key, 0) + count
            entry.total += count
            if is_test:
                entry.test_emails += count
            else:
                entry.production_emails += count

        users_stmt = select(
            ScheduledEmail.flow_id, func.count(distinct(ScheduledEmail.user_id))
        ).group_by(ScheduledEmail.flow_id)
        for flow_id, count in (await self.db.execute(users_stmt)).all():
            if flow_id in stats:
                stats[flow_id].unique_users = count

        active_stmt = (
            select(ScheduledEmail.flow_id, func.count(distinct(ScheduledEmail.flow_trigger_id)))
            .where(ScheduledEmail.status == ScheduledEmailStatus.PENDING)
            .group_by(ScheduledEmail.flow_id)
        )
        for flow_id, count in (await self.db.execute(active_stmt)).all():
            if flow_id in stats:
                stats[flow_id].active_instances = count

        return list(stats.values())

    async def retry_failed(self, scheduled_email_id: UUID) -> ScheduledEmail:
        """Put a failed email back in the queue for immediate delivery."""
        email = await self.db.get(ScheduledEmail, scheduled_email_id)
        if email is None:
            raise NotFoundError("Scheduled email not found")
        if email.status != ScheduledEmailStatus.FAILED:
            raise ValidationError(f"Only failed emails can be retried (status is {email.status.value})")

        conflict_stmt = select(ScheduledEmail.id).where(
            ScheduledEmail.user_id == email.user_id,
            ScheduledEmail.flow_id == email.flow_id,
            ScheduledEmail.step_index == email.step_index,
            ScheduledEmail.status == ScheduledEmailStatus.PENDING,
        )
        if (await self.db.execute(conflict_stmt)).first() is not None:
            raise ValidationError("A newer pending email exists for this step")

        stmt = (
            update(ScheduledEmail)
            .where(
                ScheduledEmail.id == scheduled_email_id,
                ScheduledEmail.status == ScheduledEmailStatus.FAILED,
            )
            .values(
                status=ScheduledEmailStatus.PENDING,
                scheduled_at=datetime.now(UTC),
                failure_reason=None,
            )
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise ValidationError("Email is no longer in failed state")

        await self.db.refresh(email)
        email.task_id = self.scheduler.schedule(email)
        await self.db.commit()

        logger.info("Retrying failed email %s", scheduled_email_id)
        return email

    async def requeue_stale_pending(self, grace: timedelta, limit: int = 500) -> int:
        """Re-enqueue pending rows whose job should have fired long ago.

        Rows stuck in ``sending`` (worker died mid-step) are marked failed so
        an admin can retry them.
        """
        cutoff = datetime.now(UTC) - grace
        stalled = await self.db.execute(
            update(ScheduledEmail)
            .where(
                ScheduledEmail.status == ScheduledEmailStatus.SENDING,
                ScheduledEmail.updated_at < cutoff,
            )
            .values(status=ScheduledEmailStatus.FAILED, failure_reason="stalled while sending")
            .execution_options(synchronize_session=False)
        )
        if stalled.rowcount:  # type: ignore[attr-defined]
            logger.warning("Marked %d stalled emails as failed", stalled.rowcount)  # type: ignore[attr-defined]

        stmt = (
            select(ScheduledEmail)
            .where(
                ScheduledEmail.status == ScheduledEmailStatus.PENDING,
                ScheduledEmail.scheduled_at < cutoff,
            )
            .order_by(ScheduledEmail.scheduled_at)
            .limit(limit)
        )
        emails = list((await self.db.execute(stmt)).scalars().all())

        requeued = 0
        for email in emails:
            try:
                email.task_id = self.scheduler.schedule(email)
                requeued += 1
            except Exception:
                logger.exception("Failed to requeue email %s", email.id)
        await self.db.commit()

        if requeued:
            logger.warning("Requeued %d stale pending emails", requeued)
        return requeued

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _get_by_trigger(self, flow_trigger_id: str) -> list[ScheduledEmail]:
        stmt = (
            select(ScheduledEmail)
            .where(ScheduledEmail.flow_trigger_id == flow_trigger_id)
            .order_by(ScheduledEmail.step_index)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def _get_first_name(self, user_id: str) -> str:
        stmt = select(Profile.first_name).where(Profile.user_id == user_id)
        first_name = (await self.db.execute(stmt)).scalar_one_or_none()
        return first_name or "there"

    async def _mark_cancelled(self, conditions: list[Any], reason: str) -> list[tuple[UUID, str | None]]:
        """Atomically move matching pending or failed rows to cancelled. Does not commit.

        Failed rows may still have a worker retry queued, so they are cancelled
        too. Returns (id, task_id) for each row this call cancelled.
        """
        now = datetime.now(UTC)
        cancelled: list[tuple[UUID, str | None]] = []
        for prior_status in CANCELLABLE_STATUSES:
            stmt = (
                update(ScheduledEmail)
                .where(*conditions, ScheduledEmail.status == prior_status)
                .values(
                    status=ScheduledEmailStatus.CANCELLED,
                    cancelled_at=now,
                    cancel_reason=reason,
                )
                .returning(ScheduledEmail.id, ScheduledEmail.task_id, ScheduledEmail.user_id)
            )
            rows = (await self.db.execute(stmt)).all()
            self.db.add_all(
                EmailEvent(
                    scheduled_email_id=row.id,
                    user_id=row.user_id,
                    event_type="cancelled",
                    occurred_at=now,
                    metadata_={"reason": reason, "previous_status": prior_status.value},
                )
                for row in rows
            )
            cancelled.extend((row.id, row.task_id) for row in rows)
        return cancelled

    def _revoke(self, task_ids: list[str | None]) -> None:
        ids = [task_id for task_id in task_ids if task_id]
        if not ids:
            return
        try:
            self.scheduler.cancel(ids)
        except Exception:
            # Executor re-checks status, so a surviving job is harmless
            logger.exception("Failed to revoke %d scheduled tasks", len(ids))
