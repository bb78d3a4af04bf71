"""Email delivery service using Resend API."""

import logging
from typing import Any

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class EmailService:
    """Sends rendered emails via the Resend API."""

    def __init__(self, api_key: str | None = None, from_address: str | None = None) -> None:
        self.api_key = settings.resend_api_key if api_key is None else api_key
        self.from_address = from_address or settings.email_from_address

    async def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        tags: list[dict[str, str]] | None = None,
        idempotency_key: str | None = None,
    ) -> str | None:
        """Send one email.

        ``idempotency_key`` is forwarded to Resend so a retried call for the
        same step is not delivered twice. Returns the Resend email ID on
        success, None on failure.
        """
        payload: dict[str, Any] = {
            "from": self.from_address,
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }
        if settings.email_reply_to:
            payload["reply_to"] = settings.email_reply_to
        if tags:
            payload["tags"] = tags

        if not self.api_key:
            logger.warning("Resend API key not configured, email not sent to %s", to_email)
            return None

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(RESEND_API_URL, headers=headers, json=payload)
                if response.is_success:
                    data = response.json()
                    email_id = data.get("id")
                    logger.info("Email sent: to=%s id=%s", to_email, email_id)
                    return str(email_id) if email_id else None
                else:
                    logger.error(
                        "Failed to send email: to=%s status=%s body=%s",
                        to_email,
                        response.status_code,
                        response.text[:500],
                    )
                    return None
        except httpx.HTTPError:
            logger.exception("Error sending email to %s", to_email)
            return None
