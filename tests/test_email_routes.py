"""Tests for the lifecycle email API routes."""

from collections.abc import Callable
from typing import Any

from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.scheduled_email import EmailType, ScheduledEmail, ScheduledEmailStatus
from app.services.preference_service import PreferenceService
from tests.conftest import TEST_USER_EMAIL, TEST_USER_ID, FakeScheduler

API = "/api/v1/email"


async def _status(db: AsyncSession, email: ScheduledEmail) -> ScheduledEmailStatus:
    await db.refresh(email)
    return email.status


# ---------------------------------------------------------------------------
# Access control
# ---------------------------------------------------------------------------


class TestAdminAccess:
    async def test_non_admin_forbidden(self, client: AsyncClient) -> None:
        response = await client.get(f"{API}/flows")

        assert response.status_code == 403
        assert response.json() == {"detail": "Admin access required", "code": "FORBIDDEN"}

    async def test_unauthenticated_rejected(self, unauthed_client: AsyncClient) -> None:
        response = await unauthed_client.get(f"{API}/flows")

        assert response.status_code == 401

    async def test_preferences_require_auth(self, unauthed_client: AsyncClient) -> None:
        response = await unauthed_client.get(f"{API}/preferences")

        assert response.status_code == 401


# ---------------------------------------------------------------------------
# Admin: flows, sequences, history
# ---------------------------------------------------------------------------


class TestFlows:
    async def test_list_flows(self, admin_client: AsyncClient) -> None:
        response = await admin_client.get(f"{API}/flows")

        assert response.status_code == 200
        flows = {f["flow_id"]: f for f in response.json()}
        trial = flows["trial_sequence"]
        assert trial["trigger_event"] == "trial_started"
        assert len(trial["steps"]) == 12
        assert trial["steps"][0]["has_skip_condition"] is False
        assert trial["steps"][1]["delay_minutes"] == 1440
        assert flows["onboarding_abandoned"]["steps"][0]["delay_minutes"] == 15

    async def test_flow_stats(
        self,
        admin_client: AsyncClient,
        scheduled_email_factory: Callable[..., Any],
    ) -> None:
        await scheduled_email_factory()

        response = await admin_client.get(f"{API}/flows/stats")

        assert response.status_code == 200
        stats = {s["flow_id"]: s for s in response.json()}
        assert stats["trial_sequence"]["by_status"] == {"pending": 1}
        assert stats["trial_sequence"]["active_instances"] == 1


class TestCancel:
    async def test_cancel_by_user_and_flow(
        self,
        admin_client: AsyncClient,
        db_session: AsyncSession,
        fake_scheduler: FakeScheduler,
        scheduled_email_factory: Callable[..., Any],
    ) -> None:
        email = await scheduled_email_factory()

        response = await admin_client.post(
            f"{API}/sequences/cancel",
            json={"user_id": TEST_USER_ID, "flow_id": "trial_sequence"},
        )

        assert response.status_code == 200
        assert response.json() == {"cancelled": 1}
        assert await _status(db_session, email) == ScheduledEmailStatus.CANCELLED
        assert email.cancel_reason == "admin_cancelled"

    async def test_cancel_requires_a_target(self, admin_client: AsyncClient) -> None:
        response = await admin_client.post(f"{API}/sequences/cancel", json={})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    async def test_cancel_all_for_user(
        self,
        admin_client: AsyncClient,
        scheduled_email_factory: Callable[..., Any],
    ) -> None:
        await scheduled_email_factory(step_index=0)
        await scheduled_email_factory(step_index=1, template_id="trial_day1_lessons")

        response = await admin_client.post(f"{API}/users/{TEST_USER_ID}/cancel-all")

        assert response.status_code == 200
        assert response.json() == {"cancelled": 2}


class TestScheduledEmails:
    async def test_list_with_filters(
        self,
        admin_client: AsyncClient,
        scheduled_email_factory: Callable[..., Any],
    ) -> None:
        await scheduled_email_factory(step_index=0, status=ScheduledEmailStatus.SENT)
        await scheduled_email_factory(step_index=1, template_id="trial_day1_lessons")
        await scheduled_email_factory(user_id="someone-else", email_address="else@example.com")

        response = await admin_client.get(
            f"{API}/scheduled", params={"user_id": TEST_USER_ID, "status": "pending"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["pages"] == 1
        assert data["items"][0]["template_id"] == "trial_day1_lessons"
        assert data["items"][0]["status"] == "pending"

    async def test_retry_failed_email(
        self,
        admin_client: AsyncClient,
        fake_scheduler: FakeScheduler,
        scheduled_email_factory: Callable[..., Any],
    ) -> None:
        email = await scheduled_email_factory(status=ScheduledEmailStatus.FAILED)

        response = await admin_client.post(f"{API}/scheduled/{email.id}/retry")

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert len(fake_scheduler.scheduled) == 1

    async def test_retry_sent_email_rejected(
        self,
        admin_client: AsyncClient,
        scheduled_email_factory: Callable[..., Any],
    ) -> None:
        email = await scheduled_email_factory(status=ScheduledEmailStatus.SENT)

        response = await admin_client.post(f"{API}/scheduled/{email.id}/retry")

        assert response.status_code == 400


class TestTemplates:
    async def test_list_templates(self, admin_client: AsyncClient) -> None:
        response = await admin_client.get(f"{API}/templates")

        assert response.status_code == 200
        ids = {t["template_id"] for t in response.json()}
        assert {"trial_welcome", "onboarding_abandoned_7day"} <= ids

    async def test_preview_json(self, admin_client: AsyncClient) -> None:
        response = await admin_client.get(f"{API}/templates/trial_welcome/preview")

        assert response.status_code == 200
        data = response.json()
        assert data["subject"] == "Welcome to your free trial, Alex"
        assert "Hi Alex" in data["html"]

    async def test_preview_html(self, admin_client: AsyncClient) -> None:
        response = await admin_client.get(
            f"{API}/templates/trial_welcome/preview", params={"format": "html"}
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "Unsubscribe" in response.text

    async def test_preview_unknown_template(self, admin_client: AsyncClient) -> None:
        response = await admin_client.get(f"{API}/templates/nope/preview")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


# ---------------------------------------------------------------------------
# User preferences
# ---------------------------------------------------------------------------


class TestPreferences:
    async def test_get_defaults_to_subscribed(self, client: AsyncClient) -> None:
        response = await client.get(f"{API}/preferences")

        assert response.status_code == 200
        assert response.json() == {
            "email_address": TEST_USER_EMAIL,
            "subscribed": True,
            "unsubscribed_at": None,
        }

    async def test_unsubscribe_cancels_marketing_only(
        self,
        client: AsyncClient,
        db_session: AsyncSession,
        scheduled_email_factory: Callable[..., Any],
    ) -> None:
        marketing = await scheduled_email_factory()
        transactional = await scheduled_email_factory(
            flow_id="receipts", template_id="receipt", email_type=EmailType.TRANSACTIONAL
        )

        response = await client.patch(f"{API}/preferences", json={"subscribed": False})

        assert response.status_code == 200
        assert response.json()["subscribed"] is False
        assert await _status(db_session, marketing) == ScheduledEmailStatus.CANCELLED
        assert marketing.cancel_reason == "unsubscribed"
        assert await _status(db_session, transactional) == ScheduledEmailStatus.PENDING

    async def test_resubscribe(self, client: AsyncClient, db_session: AsyncSession) -> None:
        await PreferenceService(db_session).unsubscribe(TEST_USER_ID, TEST_USER_EMAIL)

        response = await client.patch(f"{API}/preferences", json={"subscribed": True})

        assert response.status_code == 200
        assert response.json()["subscribed"] is True


# ---------------------------------------------------------------------------
# Public unsubscribe links
# ---------------------------------------------------------------------------


class TestUnsubscribeLinks:
    async def test_token_status(
        self, unauthed_client: AsyncClient, token_factory: Callable[..., Any]
    ) -> None:
        await token_factory(token="t" * 64)

        response = await unauthed_client.get(f"{API}/unsubscribe/{'t' * 64}")

        assert response.status_code == 200
        assert response.json() == {"email_address": TEST_USER_EMAIL, "subscribed": True}

    async def test_invalid_token_404(self, unauthed_client: AsyncClient) -> None:
        response = await unauthed_client.get(f"{API}/unsubscribe/bogus")

        assert response.status_code == 404
        assert response.json()["detail"] == "This link is invalid or has expired"

    async def test_unsubscribe_with_token(
        self,
        unauthed_client: AsyncClient,
        db_session: AsyncSession,
        token_factory: Callable[..., Any],
        scheduled_email_factory: Callable[..., Any],
    ) -> None:
        await token_factory(token="u" * 64)
        email = await scheduled_email_factory()

        response = await unauthed_client.post(
            f"{API}/unsubscribe/{'u' * 64}", json={"reason": "not interested"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "unsubscribed"
        assert data["email_address"] == TEST_USER_EMAIL
        assert data["cancelled"] == 1
        assert data["resubscribe_token"]
        assert await _status(db_session, email) == ScheduledEmailStatus.CANCELLED

        preferences = PreferenceService(db_session)
        assert not await preferences.can_send(TEST_USER_ID, TEST_USER_EMAIL, EmailType.MARKETING)

    async def test_token_cannot_be_reused(
        self, unauthed_client: AsyncClient, token_factory: Callable[..., Any]
    ) -> None:
        await token_factory(token="r" * 64)

        first = await unauthed_client.post(f"{API}/unsubscribe/{'r' * 64}")
        second = await unauthed_client.post(f"{API}/unsubscribe/{'r' * 64}")

        assert first.status_code == 200
        assert second.status_code == 404

    async def test_used_token_rejected(
        self, unauthed_client: AsyncClient, token_factory: Callable[..., Any]
    ) -> None:
        await token_factory(token="x" * 64, used=True)

        response = await unauthed_client.post(f"{API}/unsubscribe/{'x' * 64}")

        assert response.status_code == 404

    async def test_resubscribe_with_returned_token(
        self,
        unauthed_client: AsyncClient,
        db_session: AsyncSession,
        token_factory: Callable[..., Any],
    ) -> None:
        await token_factory(token="s" * 64)
        unsubscribed = await unauthed_client.post(f"{API}/unsubscribe/{'s' * 64}")
        resubscribe_token = unsubscribed.json()["resubscribe_token"]

        response = await unauthed_client.post(f"{API}/resubscribe/{resubscribe_token}")

        assert response.status_code == 200
        assert response.json()["status"] == "subscribed"
        preferences = PreferenceService(db_session)
        assert await preferences.can_send(TEST_USER_ID, TEST_USER_EMAIL, EmailType.MARKETING)

    async def test_unsubscribe_does_not_touch_other_users(
        self,
        unauthed_client: AsyncClient,
        db_session: AsyncSession,
        token_factory: Callable[..., Any],
        scheduled_email_factory: Callable[..., Any],
    ) -> None:
        await token_factory(token="o" * 64)
        other = await scheduled_email_factory(user_id="other", email_address="o@example.com")

        await unauthed_client.post(f"{API}/unsubscribe/{'o' * 64}")

        pending = await db_session.scalar(
            select(ScheduledEmail.status).where(ScheduledEmail.id == other.id)
        )
        assert pending == ScheduledEmailStatus.PENDING
