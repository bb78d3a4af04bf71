"""Schemas for the lifecycle email API."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from app.models.scheduled_email import EmailType, ScheduledEmailStatus
from app.schemas.common import BaseSchema

# --- Flows ---


class FlowStepResponse(BaseSchema):
    step_index: int
    delay_minutes: float
    template_id: str
    email_type: EmailType
    has_skip_condition: bool


class FlowResponse(BaseSchema):
    """A flow definition as exposed to admins."""

    flow_id: str
    name: str
    description: str
    trigger_event: str
    cancel_events: list[str]
    steps: list[FlowStepResponse]


class FlowStatsResponse(BaseSchema):
    """Aggregate counts for one flow."""

    flow_id: str
    name: str
    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    active_instances: int = 0
    unique_users: int = 0
    test_emails: int = 0
    production_emails: int = 0


# --- Sequences ---


class CancelSequenceRequest(BaseSchema):
    """Cancel by ``flow_trigger_id`` or by ``user_id`` + ``flow_id``."""

    flow_trigger_id: str | None = None
    user_id: str | None = None
    flow_id: str | None = None


class CancelAllRequest(BaseSchema):
    email_type: EmailType | None = None
    reason: str = "admin_cancelled"


class CancelResponse(BaseSchema):
    cancelled: int


class ScheduledEmailResponse(BaseSchema):
    """Scheduled email row for the admin email history."""

    id: UUID
    user_id: str
    email_address: str
    flow_id: str
    step_index: int
    template_id: str
    email_type: EmailType
    scheduled_at: datetime
    status: ScheduledEmailStatus
    flow_trigger_id: str
    provider_email_id: str | None = None
    sent_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    skip_reason: str | None = None
    failure_reason: str | None = None
    retry_count: int
    is_test: bool
    created_at: datetime


# --- Templates ---


class TemplateResponse(BaseSchema):
    template_id: str
    subject: str


class TemplatePreviewResponse(BaseSchema):
    template_id: str
    subject: str
    html: str


# --- Preferences & unsubscribe ---


class PreferencesResponse(BaseSchema):
    email_address: str
    subscribed: bool
    unsubscribed_at: datetime | None = None


class PreferencesUpdate(BaseSchema):
    subscribed: bool
    reason: str | None = Field(None, max_length=255)


class TokenStatusResponse(BaseSchema):
    """What an unsubscribe link points at."""

    email_address: str
    subscribed: bool


class UnsubscribeRequest(BaseSchema):
    reason: str | None = Field(None, max_length=255)


class UnsubscribeResponse(BaseSchema):
    status: str
    email_address: str
    cancelled: int = 0
    # Fresh single-use token so the confirmation page can offer an undo
    resubscribe_token: str | None = None
