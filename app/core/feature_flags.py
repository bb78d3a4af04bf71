"""Typed access to feature flags.

Flags come from ``settings.feature_flags`` (``FEATURE_FLAGS='{"email_test_mode": true}'``).
Every read has an explicit default so an unset flag never changes behaviour.
"""

from collections.abc import Mapping
from functools import lru_cache

from app.core.config import settings

# One day of delay becomes one minute in test mode
TEST_MODE_TIME_MULTIPLIER = 1 / 1440


class FeatureFlags:
    """Read-only view over a flag mapping."""

    def __init__(self, values: Mapping[str, bool] | None = None) -> None:
        self._values = dict(values or {})

    def is_enabled(self, name: str, default: bool = False) -> bool:
        return bool(self._values.get(name, default))

    @property
    def email_sequences_enabled(self) -> bool:
        """Master switch for scheduling new sequences."""
        return self.is_enabled("email_sequences_enabled", default=True)

    @property
    def email_test_mode(self) -> bool:
        return self.is_enabled("email_test_mode", default=False)

    @property
    def tracking_enabled(self) -> bool:
        return self.is_enabled("tracking_enabled", default=True)

    @property
    def time_multiplier(self) -> float:
        """Factor applied to every step delay."""
        return TEST_MODE_TIME_MULTIPLIER if self.email_test_mode else 1.0


@lru_cache
def get_feature_flags() -> FeatureFlags:
    """Get flags built from application settings."""
    return FeatureFlags(settings.feature_flags)
