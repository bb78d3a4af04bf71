"""Celery tasks for lifecycle email sequences."""

import asyncio
import logging
from collections.abc import Coroutine
from datetime import timedelta
from typing import Any
from uuid import UUID

from app.core.config import settings
from app.core.database import async_session_maker, engine
from app.integrations.amplitude.client import AmplitudeClient
from app.services.sequence_service import SequenceService
from app.services.step_executor import StepExecutor
from app.workers.celery_app import BaseTask, celery_app

logger = logging.getLogger(__name__)


def _run_async[T](coro: Coroutine[Any, Any, T]) -> T:
    """Run an async coroutine in a fresh event loop, disposing DB connections after.

    asyncpg connections are bound to the loop that created them, so pooled
    connections from a previous task's (closed) loop must not be reused.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.run_until_complete(engine.dispose())
        loop.close()


# ---------------------------------------------------------------------------
# Step execution (scheduled with an ETA by CelerySequenceScheduler)
# ---------------------------------------------------------------------------


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.email.execute_scheduled_email",
    base=BaseTask,
    bind=True,
)
def execute_scheduled_email(self: BaseTask, scheduled_email_id: str) -> dict[str, Any]:  # noqa: ARG001
    """Send (or skip) one scheduled email. DeliveryError triggers Celery's retry."""
    return _run_async(_execute_scheduled_email_async(UUID(scheduled_email_id)))


async def _execute_scheduled_email_async(scheduled_email_id: UUID) -> dict[str, Any]:
    async with async_session_maker() as session:
        return await StepExecutor(session).execute(scheduled_email_id)


# ---------------------------------------------------------------------------
# Lifecycle events from the web app
# ---------------------------------------------------------------------------


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.email.handle_lifecycle_event",
    base=BaseTask,
    bind=True,
)
def handle_lifecycle_event(
    self: BaseTask,  # noqa: ARG001
    user_id: str,
    event_name: str,
    email_address: str | None = None,
    trigger_event_id: str | None = None,
    variables: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Trigger or cancel flows for an application event (e.g. ``trial_started``)."""
    return _run_async(
        _handle_lifecycle_event_async(
            user_id, event_name, email_address, trigger_event_id, variables
        )
    )


async def _handle_lifecycle_event_async(
    user_id: str,
    event_name: str,
    email_address: str | None,
    trigger_event_id: str | None,
    variables: dict[str, Any] | None,
) -> dict[str, Any]:
    async with async_session_maker() as session:
        service = SequenceService(session)
        result = await service.handle_event(
            user_id,
            event_name,
            email_address=email_address,
            trigger_event_id=trigger_event_id,
            variables=variables,
        )

    logger.info("Handled lifecycle event: user=%s event=%s result=%s", user_id, event_name, result)
    return result


# ---------------------------------------------------------------------------
# Periodic sweep (Celery Beat)
# ---------------------------------------------------------------------------


@celery_app.task(  # type: ignore[untyped-decorator]
    name="tasks.email.requeue_stale_pending",
    base=BaseTask,
    bind=True,
)
def requeue_stale_pending(self: BaseTask) -> dict[str, Any]:  # noqa: ARG001
    """Periodic task: re-enqueue pending emails whose job was lost."""
    return _run_async(_requeue_stale_pending_async())


async def _requeue_stale_pending_async() -> dict[str, Any]:
    async with async_session_maker() as session:
        count = await SequenceService(session).requeue_stale_pending(
            timedelta(minutes=settings.requeue_grace_minutes)
        )
    return {"status": "completed", "requeued": count}


# ---------------------------------------------------------------------------
# Analytics (fire-and-forget, never retried)
# ---------------------------------------------------------------------------


@celery_app.task(name="tasks.email.track_analytics_event", ignore_result=True)  # type: ignore[untyped-decorator]
def track_analytics_event(
    event_type: str,
    user_id: str,
    properties: dict[str, Any] | None = None,
) -> bool:
    """Forward an event to Amplitude. Failures are logged and dropped."""
    try:
        return _run_async(_track_analytics_event_async(event_type, user_id, properties))
    except Exception:
        logger.exception("Analytics tracking failed for %s", event_type)
        return False


async def _track_analytics_event_async(
    event_type: str, user_id: str, properties: dict[str, Any] | None
) -> bool:
    client = AmplitudeClient(settings.amplitude_api_key)
    return await client.track(event_type, user_id, properties)
