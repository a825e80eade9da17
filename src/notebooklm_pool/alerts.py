"""Operator alerts posted to a webhook when an account needs a human."""

import logging
from typing import Any

import httpx

from .models import isoformat, utc_now

logger = logging.getLogger("notebooklm_pool.alerts")


class AlertNotifier:
    """POSTs JSON alerts to a webhook. Delivery failures are logged, never raised."""

    def __init__(self, webhook_url: str | None, timeout: float = 10.0):
        self.webhook_url = webhook_url
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def send(self, event: str, message: str, **details: Any) -> bool:
        if not self.webhook_url:
            return False
        payload = {
            "event": event,
            "message": message,
            "timestamp": isoformat(utc_now()),
            "service": "notebooklm-pool",
            "details": details,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()
            logger.debug(f"Alert '{event}' delivered")
            return True
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Alert '{event}' could not be delivered: {e}")
            return False
