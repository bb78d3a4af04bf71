"""Minimal Amplitude HTTP API v2 client."""

import logging
import time
from typing import Any

import httpx

logger = logging.getLogger(__name__)

AMPLITUDE_API_URL = "https://api2.amplitude.com/2/httpapi"


class AmplitudeClient:
    """Sends server-side events to Amplitude."""

    def __init__(self, api_key: str, timeout: float = 10.0) -> None:
        self.api_key = api_key
        self.timeout = timeout

    async def track(
        self,
        event_type: str,
        user_id: str,
        properties: dict[str, Any] | None = None,
    ) -> bool:
        """Send one event. Returns False on any failure; never raises."""
        if not self.api_key:
            logger.debug("Amplitude API key not configured, dropping %s", event_type)
            return False

        payload = {
            "api_key": self.api_key,
            "events": [
                {
                    "user_id": user_id,
                    "event_type": event_type,
                    "event_properties": properties or {},
                    "time": int(time.time() * 1000),
                }
            ],
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(AMPLITUDE_API_URL, json=payload)
        except httpx.HTTPError:
            logger.warning("Amplitude request failed for %s", event_type, exc_info=True)
            return False

        if not response.is_success:
            logger.warning(
                "Amplitude rejected event %s: status=%s body=%s",
                event_type,
                response.status_code,
                response.text[:200],
            )
            return False
        return True
