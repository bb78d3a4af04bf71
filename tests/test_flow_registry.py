"""Tests for flow definitions and the registry."""

from datetime import timedelta

import pytest

from app.core.exceptions import NotFoundError
from app.models.scheduled_email import EmailType
from app.services.flow_registry import (
    ONBOARDING_ABANDONED,
    TRIAL_SEQUENCE,
    FlowDefinition,
    FlowRegistry,
    FlowStep,
    get_flow_registry,
    has_paid_subscription,
)


def _flow(flow_id: str = "f", trigger: str = "go", cancel: tuple[str, ...] = ()) -> FlowDefinition:
    return FlowDefinition(
        flow_id=flow_id,
        name=flow_id,
        description="",
        trigger_event=trigger,
        steps=(FlowStep(timedelta(0), "trial_welcome"),),
        cancel_events=cancel,
    )


class TestFlowRegistry:
    def test_get_unknown_flow(self) -> None:
        with pytest.raises(NotFoundError):
            FlowRegistry([]).get("missing")

    def test_duplicate_ids_rejected(self) -> None:
        with pytest.raises(ValueError, match="Duplicate"):
            FlowRegistry([_flow("a"), _flow("a")])

    def test_lookup_by_event(self) -> None:
        registry = FlowRegistry([_flow("a", trigger="x", cancel=("y",)), _flow("b", trigger="y")])

        assert [f.flow_id for f in registry.flows_for_trigger("x")] == ["a"]
        assert [f.flow_id for f in registry.flows_cancelled_by("y")] == ["a"]
        assert registry.flows_for_trigger("z") == []

    def test_sends_marketing(self) -> None:
        transactional = FlowDefinition(
            flow_id="t",
            name="t",
            description="",
            trigger_event="e",
            steps=(FlowStep(timedelta(0), "x", email_type=EmailType.TRANSACTIONAL),),
        )

        assert _flow().sends_marketing is True
        assert transactional.sends_marketing is False


class TestBuiltInFlows:
    def test_default_registry_has_both_flows(self) -> None:
        ids = {f.flow_id for f in get_flow_registry().all()}

        assert ids == {"trial_sequence", "onboarding_abandoned"}

    def test_trial_sequence_schedule(self) -> None:
        days = [step.delay.days for step in TRIAL_SEQUENCE.steps]

        assert days == [0, 1, 2, 3, 4, 5, 6, 7, 10, 14, 21, 28]
        assert TRIAL_SEQUENCE.steps[0].skip_condition is None
        assert all(s.skip_condition is has_paid_subscription for s in TRIAL_SEQUENCE.steps[1:])

    def test_onboarding_schedule(self) -> None:
        delays = [step.delay for step in ONBOARDING_ABANDONED.steps]

        assert delays == [timedelta(minutes=15), timedelta(days=1), timedelta(days=7)]
        assert ONBOARDING_ABANDONED.cancel_events == ("onboarding_completed",)

    def test_delays_are_non_decreasing(self) -> None:
        for flow in get_flow_registry().all():
            delays = [step.delay for step in flow.steps]
            assert delays == sorted(delays), flow.flow_id
