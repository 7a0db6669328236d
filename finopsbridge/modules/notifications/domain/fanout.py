from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import httpx
import structlog

from finopsbridge.models.policy import Policy
from finopsbridge.models.violation import Violation
from finopsbridge.models.webhook import Webhook
from finopsbridge.modules.enforcement.domain.repository import EnforcementRepository
from finopsbridge.modules.notifications.domain.payloads import (
    build_payload,
    validate_webhook_url,
)
from finopsbridge.shared.core.config import Settings, get_settings
from finopsbridge.shared.core.exceptions import DeliveryError, RepositoryError
from finopsbridge.shared.core.http import get_http_client

logger = structlog.get_logger()


@dataclass
class DeliveryResult:
    webhook_id: str
    channel: str
    delivered: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


class NotificationFanout:
    """
    Delivers a violation to every enabled webhook of an organization.

    Deliveries run concurrently and independently: a slow or failing
    endpoint never prevents the others from being attempted. Failures are
    logged and reported back, never retried and never raised.
    """

    def __init__(
        self,
        repository: EnforcementRepository,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.repository = repository
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or get_http_client()

    async def _post(self, webhook: Webhook, payload: dict) -> int:
        try:
            validate_webhook_url(
                webhook.url,
                require_https=self.settings.WEBHOOK_REQUIRE_HTTPS,
                block_private_ips=self.settings.WEBHOOK_BLOCK_PRIVATE_IPS,
            )
        except ValueError as e:
            raise DeliveryError(str(e), code="webhook_url_rejected") from e

        try:
            response = await self.client.post(
                webhook.url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=self.settings.WEBHOOK_TIMEOUT_SECONDS,
            )
        except httpx.TimeoutException as e:
            raise DeliveryError(
                f"Webhook timed out after {self.settings.WEBHOOK_TIMEOUT_SECONDS}s",
                code="webhook_timeout",
            ) from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Webhook request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise DeliveryError(
                f"Webhook returned status code: {response.status_code}",
                code="webhook_rejected",
                details={"status_code": response.status_code},
            )
        return response.status_code

    async def _deliver(
        self, webhook: Webhook, policy: Policy, violation: Violation, now: datetime
    ) -> DeliveryResult:
        payload = build_payload(webhook.type, policy, violation, now)
        try:
            status_code = await self._post(webhook, payload)
        except DeliveryError as e:
            logger.warning(
                "webhook_delivery_failed",
                webhook_id=webhook.id,
                channel=webhook.type,
                violation_id=violation.id,
                code=e.code,
                error=e.message,
                url=webhook.url,
            )
            return DeliveryResult(
                webhook_id=webhook.id,
                channel=webhook.type,
                delivered=False,
                status_code=e.details.get("status_code"),
                error=e.message,
            )

        logger.info(
            "webhook_delivered",
            webhook_id=webhook.id,
            channel=webhook.type,
            violation_id=violation.id,
            status_code=status_code,
        )
        return DeliveryResult(
            webhook_id=webhook.id,
            channel=webhook.type,
            delivered=True,
            status_code=status_code,
        )

    async def notify(
        self,
        organization_id: str,
        violation: Violation,
        policy: Policy,
        now: Optional[datetime] = None,
    ) -> list[DeliveryResult]:
        try:
            webhooks = await self.repository.find_enabled_webhooks(organization_id)
        except RepositoryError as e:
            logger.error(
                "webhook_lookup_failed",
                organization_id=organization_id,
                violation_id=violation.id,
                code=e.code,
                error=e.message,
            )
            return []
        if not webhooks:
            return []

        sent_at = now or datetime.now(timezone.utc)
        results = await asyncio.gather(
            *(self._deliver(w, policy, violation, sent_at) for w in webhooks)
        )
        delivered = sum(1 for r in results if r.delivered)
        logger.info(
            "violation_notifications_sent",
            organization_id=organization_id,
            violation_id=violation.id,
            delivered=delivered,
            failed=len(results) - delivered,
        )
        return list(results)
