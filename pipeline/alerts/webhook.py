"""
Webhook alert channel: POSTs each alert as JSON
"""

from typing import Dict, Optional
import logging

import httpx

from core.exceptions import AlertDispatchError
from schemas.pipeline import Alert

logger = logging.getLogger(__name__)


class WebhookAlertChannel:
    """
    Alert channel posting to an HTTP endpoint (Slack-style incoming webhooks,
    on-call routers, ...).

    Register with:
        monitor.register_alert_channel("webhook", WebhookAlertChannel(url))

    Delivery failures raise AlertDispatchError; the monitor logs them.
    """

    def __init__(
        self,
        url: str,
        pipeline_id: Optional[str] = None,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.pipeline_id = pipeline_id
        self.timeout = timeout
        self.headers = headers or {}
        self._client = client

    def build_payload(self, alert: Alert) -> Dict:
        payload = alert.model_dump(mode="json")
        payload["text"] = f"[{alert.severity.value.upper()}] {alert.message}"
        if self.pipeline_id:
            payload["pipeline_id"] = self.pipeline_id
        return payload

    async def __call__(self, alert: Alert) -> None:
        payload = self.build_payload(alert)
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload, headers=self.headers)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise AlertDispatchError(
                f"Webhook delivery failed: {e}",
                context={"url": self.url, "alert_type": alert.type.value},
                original_exception=e,
            )

        logger.debug(f"Delivered {alert.type.value} alert to webhook")
