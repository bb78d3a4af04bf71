"""Celery application configuration."""

from celery import Celery, signals

from app.core.config import settings
from app.core.logging_config import request_id_var, setup_logging
from app.core.sentry import init_sentry

# Create Celery app
celery_app = Celery(
    "lifecycle_email",
    broker=str(settings.redis_url),
    backend=str(settings.redis_url),
    include=[
        "app.workers.tasks.email",
    ],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Task safety limits
    task_time_limit=300,
    task_soft_time_limit=240,
    # Task execution settings (at-least-once: handlers re-check row status)
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Result backend settings
    result_expires=3600,  # Results expire after 1 hour
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,
    # ETA tasks stay unacked in Redis until they run; keep them from being redelivered early
    broker_transport_options={"visibility_timeout": 60 * 60 * 24 * 30},
    # Default queue name (must match worker -Q flag)
    task_default_queue="default",
    # Task routing
    task_routes={
        "tasks.email.execute_scheduled_email": {"queue": "email"},
        "tasks.email.track_analytics_event": {"queue": "analytics"},
    },
    # Beat schedule (for periodic tasks)
    beat_schedule={
        "requeue-stale-scheduled-emails": {
            "task": "tasks.email.requeue_stale_pending",
            "schedule": 300.0,  # Every 5 minutes
        },
    },
)


# Task base class with common error handling
class BaseTask(celery_app.Task):  # type: ignore[misc, name-defined]
    """Base task class with error handling."""

    abstract = True
    autoretry_for = (Exception,)
    retry_backoff = True
    retry_backoff_max = 600  # Max 10 minutes between retries
    retry_jitter = True
    max_retries = 3


@signals.setup_logging.connect
def _configure_worker_logging(**_kwargs: object) -> None:
    """Use the API's JSON logging in workers instead of Celery's default."""
    setup_logging(debug=settings.debug)


@signals.celeryd_init.connect
def _init_worker_sentry(**_kwargs: object) -> None:
    init_sentry("worker")


@signals.task_prerun.connect
def _bind_task_id(task_id: str | None = None, **_kwargs: object) -> None:
    """Tag log lines emitted during a task with its task id."""
    request_id_var.set(task_id or "")
