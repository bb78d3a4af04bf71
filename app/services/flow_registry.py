"""Static registry of lifecycle email flows."""

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundError
from app.models.profile import Profile
from app.models.scheduled_email import EmailType, ScheduledEmail

# Returns True when the step should not be sent
SkipCondition = Callable[[AsyncSession, ScheduledEmail], Awaitable[bool]]


@dataclass(frozen=True)
class FlowStep:
    """One timed email in a flow. ``delay`` is measured from the trigger."""

    delay: timedelta
    template_id: str
    email_type: EmailType = EmailType.MARKETING
    skip_condition: SkipCondition | None = None


@dataclass(frozen=True)
class FlowDefinition:
    flow_id: str
    name: str
    description: str
    trigger_event: str
    steps: tuple[FlowStep, ...]
    cancel_events: tuple[str, ...] = field(default_factory=tuple)

    @property
    def sends_marketing(self) -> bool:
        return any(step.email_type == EmailType.MARKETING for step in self.steps)


class FlowRegistry:
    """Lookup of flow definitions by id and by lifecycle event."""

    def __init__(self, flows: Iterable[FlowDefinition]) -> None:
        self._flows: dict[str, FlowDefinition] = {}
        for flow in flows:
            if flow.flow_id in self._flows:
                raise ValueError(f"Duplicate flow id: {flow.flow_id}")
            self._flows[flow.flow_id] = flow

    def get(self, flow_id: str) -> FlowDefinition:
        """Return the flow or raise NotFoundError."""
        flow = self._flows.get(flow_id)
        if flow is None:
            raise NotFoundError(f"Unknown flow: {flow_id}")
        return flow

    def all(self) -> list[FlowDefinition]:
        return list(self._flows.values())

    def flows_for_trigger(self, event: str) -> list[FlowDefinition]:
        return [f for f in self._flows.values() if f.trigger_event == event]

    def flows_cancelled_by(self, event: str) -> list[FlowDefinition]:
        return [f for f in self._flows.values() if event in f.cancel_events]


# ---------------------------------------------------------------------------
# Skip conditions
# ---------------------------------------------------------------------------


async def _get_profile(db: AsyncSession, user_id: str) -> Profile | None:
    stmt = select(Profile).where(Profile.user_id == user_id)
    return (await db.execute(stmt)).scalar_one_or_none()


async def onboarding_completed(db: AsyncSession, email: ScheduledEmail) -> bool:
    """Skip onboarding nudges once the user has finished onboarding."""
    profile = await _get_profile(db, email.user_id)
    return profile is not None and profile.onboarding_completed_at is not None


async def has_paid_subscription(db: AsyncSession, email: ScheduledEmail) -> bool:
    """Skip trial nudges once the user has converted to a paid plan."""
    profile = await _get_profile(db, email.user_id)
    return profile is not None and profile.has_paid_subscription


# ---------------------------------------------------------------------------
# Built-in flows
# ---------------------------------------------------------------------------

TRIAL_SEQUENCE = FlowDefinition(
    flow_id="trial_sequence",
    name="Trial sequence",
    description="Welcome and nurture emails sent during and after the free trial.",
    trigger_event="trial_started",
    cancel_events=("trial_cancelled", "subscription_converted"),
    steps=(
        FlowStep(timedelta(0), "trial_welcome"),
        FlowStep(timedelta(days=1), "trial_day1_lessons", skip_condition=has_paid_subscription),
        FlowStep(timedelta(days=2), "trial_day2_contacts", skip_condition=has_paid_subscription),
        FlowStep(timedelta(days=3), "trial_day3_resume", skip_condition=has_paid_subscription),
        FlowStep(timedelta(days=4), "trial_day4_portfolio", skip_condition=has_paid_subscription),
        FlowStep(timedelta(days=5), "trial_day5_jobs", skip_condition=has_paid_subscription),
        FlowStep(timedelta(days=6), "trial_day6_ends_soon", skip_condition=has_paid_subscription),
        FlowStep(timedelta(days=7), "trial_day7_ended", skip_condition=has_paid_subscription),
        FlowStep(
            timedelta(days=10), "trial_day10_still_interested", skip_condition=has_paid_subscription
        ),
        FlowStep(timedelta(days=14), "trial_day14_need_help", skip_condition=has_paid_subscription),
        FlowStep(timedelta(days=21), "trial_day21_discount", skip_condition=has_paid_subscription),
        FlowStep(
            timedelta(days=28),
            "trial_day28_discount_reminder",
            skip_condition=has_paid_subscription,
        ),
    ),
)

ONBOARDING_ABANDONED = FlowDefinition(
    flow_id="onboarding_abandoned",
    name="Onboarding abandoned",
    description="Reminders for users who started onboarding but did not finish.",
    trigger_event="onboarding_started",
    cancel_events=("onboarding_completed",),
    steps=(
        FlowStep(
            timedelta(minutes=15),
            "onboarding_abandoned_15min",
            skip_condition=onboarding_completed,
        ),
        FlowStep(timedelta(days=1), "onboarding_abandoned_1day", skip_condition=onboarding_completed),
        FlowStep(timedelta(days=7), "onboarding_abandoned_7day", skip_condition=onboarding_completed),
    ),
)

DEFAULT_FLOWS: tuple[FlowDefinition, ...] = (TRIAL_SEQUENCE, ONBOARDING_ABANDONED)

_default_registry = FlowRegistry(DEFAULT_FLOWS)


def get_flow_registry() -> FlowRegistry:
    """FastAPI dependency returning the built-in registry."""
    return _default_registry
