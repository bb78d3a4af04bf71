"""Lifecycle email API endpoints."""

import json
import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse

from app.core.config import settings
from app.core.deps import (
    AdminUser,
    CurrentUser,
    DBSession,
    Flags,
    Registry,
    Renderer,
    Scheduler,
)
from app.core.rate_limit import limiter
from app.integrations.resend.webhooks import verify_webhook
from app.models.scheduled_email import EmailType, ScheduledEmailStatus
from app.schemas.common import PaginatedResponse
from app.schemas.email import (
    CancelAllRequest,
    CancelResponse,
    CancelSequenceRequest,
    FlowResponse,
    FlowStatsResponse,
    FlowStepResponse,
    PreferencesResponse,
    PreferencesUpdate,
    ScheduledEmailResponse,
    TemplatePreviewResponse,
    TemplateResponse,
    TokenStatusResponse,
    UnsubscribeRequest,
    UnsubscribeResponse,
)
from app.services.flow_registry import FlowDefinition
from app.services.preference_service import PreferenceService
from app.services.sequence_service import SequenceService
from app.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter()


async def get_sequence_service(
    db: DBSession,
    registry: Registry,
    scheduler: Scheduler,
    flags: Flags,
) -> SequenceService:
    return SequenceService(db, registry=registry, scheduler=scheduler, flags=flags)


def _flow_response(flow: FlowDefinition) -> FlowResponse:
    return FlowResponse(
        flow_id=flow.flow_id,
        name=flow.name,
        description=flow.description,
        trigger_event=flow.trigger_event,
        cancel_events=list(flow.cancel_events),
        steps=[
            FlowStepResponse(
                step_index=index,
                delay_minutes=step.delay.total_seconds() / 60,
                template_id=step.template_id,
                email_type=step.email_type,
                has_skip_condition=step.skip_condition is not None,
            )
            for index, step in enumerate(flow.steps)
        ],
    )


# --- Admin endpoints ---


@router.get("/flows", response_model=list[FlowResponse])
async def list_flows(_admin: AdminUser, registry: Registry) -> list[FlowResponse]:
    """List registered flow definitions."""
    return [_flow_response(flow) for flow in registry.all()]


@router.get("/flows/stats", response_model=list[FlowStatsResponse])
async def flow_stats(
    _admin: AdminUser,
    service: SequenceService = Depends(get_sequence_service),
) -> list[FlowStatsResponse]:
    """Per-flow delivery statistics."""
    return await service.get_flow_stats()


@router.post("/sequences/cancel", response_model=CancelResponse)
async def cancel_sequence(
    data: CancelSequenceRequest,
    admin: AdminUser,
    service: SequenceService = Depends(get_sequence_service),
) -> CancelResponse:
    """Cancel pending steps by flow_trigger_id, or by user_id + flow_id."""
    count = await service.cancel_sequence(
        flow_trigger_id=data.flow_trigger_id,
        user_id=data.user_id,
        flow_id=data.flow_id,
        reason="admin_cancelled",
    )
    logger.info("Admin %s cancelled %d emails", admin.get("sub"), count)
    return CancelResponse(cancelled=count)


@router.post("/users/{user_id}/cancel-all", response_model=CancelResponse)
async def cancel_all_for_user(
    user_id: str,
    admin: AdminUser,
    data: CancelAllRequest | None = None,
    service: SequenceService = Depends(get_sequence_service),
) -> CancelResponse:
    """Cancel every pending email for a user."""
    data = data or CancelAllRequest()
    count = await service.cancel_all_for_user(user_id, reason=data.reason, email_type=data.email_type)
    logger.info("Admin %s cancelled all %d emails for %s", admin.get("sub"), count, user_id)
    return CancelResponse(cancelled=count)


@router.get("/scheduled", response_model=PaginatedResponse[ScheduledEmailResponse])
async def list_scheduled_emails(
    _admin: AdminUser,
    user_id: str | None = Query(None),
    flow_id: str | None = Query(None),
    email_status: ScheduledEmailStatus | None = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    service: SequenceService = Depends(get_sequence_service),
) -> PaginatedResponse[ScheduledEmailResponse]:
    """Paginated email history."""
    emails, total = await service.list_scheduled_emails(
        page, page_size, user_id=user_id, flow_id=flow_id, status=email_status
    )
    items = [ScheduledEmailResponse.model_validate(e) for e in emails]
    pages = (total + page_size - 1) // page_size if total > 0 else 1
    return PaginatedResponse(items=items, total=total, page=page, page_size=page_size, pages=pages)


@router.post("/scheduled/{scheduled_email_id}/retry", response_model=ScheduledEmailResponse)
async def retry_scheduled_email(
    scheduled_email_id: UUID,
    _admin: AdminUser,
    service: SequenceService = Depends(get_sequence_service),
) -> ScheduledEmailResponse:
    """Requeue a failed email for immediate delivery."""
    email = await service.retry_failed(scheduled_email_id)
    return ScheduledEmailResponse.model_validate(email)


@router.get("/templates", response_model=list[TemplateResponse])
async def list_templates(_admin: AdminUser, renderer: Renderer) -> list[TemplateResponse]:
    return [TemplateResponse(template_id=t.template_id, subject=t.subject) for t in renderer.all()]


@router.get("/templates/{template_id}/preview", response_model=None)
async def preview_template(
    template_id: str,
    _admin: AdminUser,
    renderer: Renderer,
    output: str = Query("json", pattern="^(json|html)$", alias="format"),
) -> TemplatePreviewResponse | HTMLResponse:
    """Render a template with sample variables."""
    rendered = renderer.preview(template_id)
    if output == "html":
        return HTMLResponse(rendered.html)
    return TemplatePreviewResponse(
        template_id=template_id, subject=rendered.subject, html=rendered.html
    )


# --- Authenticated user endpoints ---


def _user_identity(user: dict[str, Any]) -> tuple[str, str]:
    email = user.get("email")
    if not email:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Session has no email address")
    return str(user["sub"]), str(email)


@router.get("/preferences", response_model=PreferencesResponse)
async def get_preferences(user: CurrentUser, db: DBSession) -> PreferencesResponse:
    """Get the caller's email preferences."""
    user_id, email = _user_identity(user)
    preference = await PreferenceService(db).get_or_create_preferences(user_id, email)
    return PreferencesResponse.model_validate(preference)


@router.patch("/preferences", response_model=PreferencesResponse)
async def update_preferences(
    data: PreferencesUpdate,
    user: CurrentUser,
    db: DBSession,
    service: SequenceService = Depends(get_sequence_service),
) -> PreferencesResponse:
    """Subscribe or unsubscribe the caller from marketing email."""
    user_id, email = _user_identity(user)
    preferences = PreferenceService(db)
    if data.subscribed:
        preference = await preferences.resubscribe(user_id, email)
    else:
        preference = await preferences.unsubscribe(user_id, email, reason=data.reason)
        await service.cancel_all_for_user(
            user_id, reason="unsubscribed", email_type=EmailType.MARKETING
        )
    return PreferencesResponse.model_validate(preference)


# --- Public endpoints ---


_INVALID_TOKEN = "This link is invalid or has expired"


@router.get("/unsubscribe/{token}", response_model=TokenStatusResponse)
@limiter.limit("30/minute")
async def get_unsubscribe_token(request: Request, token: str, db: DBSession) -> TokenStatusResponse:  # noqa: ARG001
    """Show who an unsubscribe link belongs to without using it."""
    preferences = PreferenceService(db)
    info = await preferences.validate_token(token)
    if info is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, _INVALID_TOKEN)

    preference = await preferences.get_or_create_preferences(info.user_id, info.email_address)
    return TokenStatusResponse(email_address=info.email_address, subscribed=preference.subscribed)


@router.post("/unsubscribe/{token}", response_model=UnsubscribeResponse)
@limiter.limit("10/minute")
async def unsubscribe(
    request: Request,  # noqa: ARG001
    token: str,
    db: DBSession,
    data: UnsubscribeRequest | None = None,
    service: SequenceService = Depends(get_sequence_service),
) -> UnsubscribeResponse:
    """Unsubscribe via a single-use token and cancel pending marketing email."""
    preferences = PreferenceService(db)
    info = await preferences.validate_token(token)
    if info is None or not await preferences.mark_token_as_used(token):
        raise HTTPException(status.HTTP_404_NOT_FOUND, _INVALID_TOKEN)

    await preferences.unsubscribe(
        info.user_id, info.email_address, reason=data.reason if data else None
    )
    cancelled = await service.cancel_all_for_user(
        info.user_id, reason="unsubscribed", email_type=EmailType.MARKETING
    )
    resubscribe_token = await preferences.generate_unsubscribe_token(
        info.user_id, info.email_address
    )
    return UnsubscribeResponse(
        status="unsubscribed",
        email_address=info.email_address,
        cancelled=cancelled,
        resubscribe_token=resubscribe_token,
    )


@router.post("/resubscribe/{token}", response_model=UnsubscribeResponse)
@limiter.limit("10/minute")
async def resubscribe(request: Request, token: str, db: DBSession) -> UnsubscribeResponse:  # noqa: ARG001
    """Resubscribe via a single-use token."""
    preferences = PreferenceService(db)
    info = await preferences.validate_token(token)
    if info is None or not await preferences.mark_token_as_used(token):
        raise HTTPException(status.HTTP_404_NOT_FOUND, _INVALID_TOKEN)

    await preferences.resubscribe(info.user_id, info.email_address)
    return UnsubscribeResponse(status="subscribed", email_address=info.email_address)


@router.post("/webhook")
async def resend_webhook(request: Request, db: DBSession) -> dict[str, Any]:
    """Receive Resend delivery events (verified via Svix signature)."""
    body = await request.body()
    if not verify_webhook(
        body,
        request.headers.get("svix-id", ""),
        request.headers.get("svix-timestamp", ""),
        request.headers.get("svix-signature", ""),
        settings.resend_webhook_secret,
    ):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid webhook signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid JSON body") from None
    if not isinstance(payload, dict):
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Invalid JSON body")

    return await WebhookService(db).process_event(payload)
