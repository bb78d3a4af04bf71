"""Sentry/GlitchTip initialisation shared by the API and Celery workers."""

import logging

from app.core.config import settings

logger = logging.getLogger(__name__)


def init_sentry(component: str) -> bool:
    """Initialise the SDK when a DSN is configured. Returns whether it did."""
    if not settings.sentry_dsn:
        return False

    import sentry_sdk
    from sentry_sdk.integrations.celery import CeleryIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=settings.version,
        traces_sample_rate=0.1,
        integrations=[CeleryIntegration()],
    )
    sentry_sdk.set_tag("component", component)
    logger.info("Sentry enabled for %s", component)
    return True
