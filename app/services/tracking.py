"""Fire-and-forget analytics tracking."""

import contextlib
import logging
from typing import Any

from app.core.feature_flags import FeatureFlags, get_feature_flags

logger = logging.getLogger(__name__)


def track_event(
    event_type: str,
    user_id: str,
    properties: dict[str, Any] | None = None,
    flags: FeatureFlags | None = None,
) -> None:
    """Queue an analytics event. Never raises."""
    flags = flags or get_feature_flags()
    if not flags.tracking_enabled:
        return

    from app.workers.tasks.email import track_analytics_event

    with contextlib.suppress(Exception):
        track_analytics_event.delay(event_type, user_id, properties or {})
