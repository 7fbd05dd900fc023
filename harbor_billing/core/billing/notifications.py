# ===================================================================
# HarborList Billing - Notifications
# Best-effort email/SMS dispatch through a notification gateway
# ===================================================================
"""
Notification channel.

Dispatch is fire-and-forget: failures are logged and reported as a
``False`` return, never raised, so they cannot block billing-state
transitions. With no gateway URL configured, notifications are only
logged.
"""

import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger("harbor_billing.notifications")


class NotificationService:
    """
    Posts notification requests to an HTTP gateway.

    Example:
        notifier = NotificationService("https://notify.internal/send")
        await notifier.send("email", "payment_failed_immediate", user_id, {"amount": "29.99"})
    """

    def __init__(
        self,
        gateway_url: Optional[str] = None,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.gateway_url = gateway_url
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def send(
        self,
        channel: str,
        template_id: Optional[str],
        user_id: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Dispatch one notification.

        Args:
            channel: "email" or "sms"
            template_id: Template reference understood by the gateway
            user_id: Recipient user id
            data: Template variables

        Returns:
            True if the gateway accepted the request (or it was logged
            because no gateway is configured)
        """
        payload = {
            "channel": channel,
            "template_id": template_id,
            "user_id": user_id,
            "data": data or {},
        }

        if not self.gateway_url:
            logger.info(f"Notification ({channel}/{template_id}) for user {user_id}: no gateway configured")
            return True

        try:
            client = await self._get_client()
            response = await client.post(self.gateway_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send {channel} notification {template_id} to user {user_id}: {e}")
            return False

        logger.info(f"Sent {channel} notification {template_id} to user {user_id}")
        return True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
