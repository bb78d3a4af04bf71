"""Hands scheduled emails to Celery and revokes them on cancel."""

import logging
import uuid
from collections.abc import Sequence
from typing import Protocol

from app.models.scheduled_email import ScheduledEmail
from app.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


class SequenceScheduler(Protocol):
    """Durable job runtime used by the sequence service."""

    def schedule(self, email: ScheduledEmail) -> str:
        """Enqueue execution of ``email`` at its ``scheduled_at``. Returns the job id."""
        ...

    def cancel(self, task_ids: Sequence[str]) -> None:
        """Ask the runtime to drop jobs. Best-effort."""
        ...


def task_id_for(email: ScheduledEmail) -> str:
    """Deterministic Celery task id for one delivery attempt of a step."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{email.idempotency_key}:{email.retry_count}"))


class CelerySequenceScheduler:
    """Schedules ``execute_scheduled_email`` with an ETA."""

    def schedule(self, email: ScheduledEmail) -> str:
        from app.workers.tasks.email import execute_scheduled_email

        task_id = task_id_for(email)
        execute_scheduled_email.apply_async(
            args=[str(email.id)],
            eta=email.scheduled_at,
            task_id=task_id,
        )
        return task_id

    def cancel(self, task_ids: Sequence[str]) -> None:
        if not task_ids:
            return
        celery_app.control.revoke(list(task_ids))
        logger.info("Revoked %d scheduled email tasks", len(task_ids))


_default_scheduler = CelerySequenceScheduler()


def get_scheduler() -> SequenceScheduler:
    """FastAPI dependency returning the Celery-backed scheduler."""
    return _default_scheduler
