from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional

import structlog

from finopsbridge.models.cloud import CloudAccount
from finopsbridge.shared.core.config import Settings, get_settings
from finopsbridge.shared.core.exceptions import RemediationError

logger = structlog.get_logger()


@dataclass
class BillingSnapshot:
    """Current-month spend for one account, as reported by the provider."""

    monthly_spend: float
    currency: str = "USD"
    extra: dict[str, Any] = field(default_factory=dict)

    def as_document(self) -> dict[str, Any]:
        # Both spellings are exposed; stored rules predate the snake_case input keys.
        return {
            **self.extra,
            "monthlySpend": self.monthly_spend,
            "monthly_spend": self.monthly_spend,
            "currency": self.currency,
        }


@dataclass
class ComputeInstance:
    id: str
    name: str
    instance_type: str
    tags: dict[str, str] = field(default_factory=dict)
    location: Optional[str] = None
    # Provider-specific addressing (resource group, zone, full resource URI, ...)
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass
class RemediationReport:
    action: str
    acted_on: list[str] = field(default_factory=list)
    skipped_essential: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not (self.failed and not self.acted_on)

    def as_metadata(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "actedOn": list(self.acted_on),
            "skippedEssential": list(self.skipped_essential),
            "failed": dict(self.failed),
        }


def has_essential_marker(
    tags: Mapping[str, Any], key: str = "Essential", value: str = "true"
) -> bool:
    """
    True when the resource carries the Essential marker.

    Keys compare case-insensitively (GCP labels are lowercase-only), values
    compare case-insensitively after trimming.
    """
    wanted_key = key.strip().lower()
    wanted_value = value.strip().lower()
    for tag_key, tag_value in tags.items():
        if str(tag_key).strip().lower() == wanted_key:
            return str(tag_value or "").strip().lower() == wanted_value
    return False


class CloudProviderAdapter(ABC):
    """
    Capability set every provider variant implements.

    Variants supply the primitives (billing, listing running instances,
    stopping/terminating one instance, CPU samples). The three remediation
    capabilities are built here so the blast-radius cap and the Essential
    exclusion are enforced identically for every provider.
    """

    kind: str = ""

    def __init__(self, account: CloudAccount, settings: Settings | None = None):
        self.account = account
        self.settings = settings or get_settings()

    @classmethod
    @abstractmethod
    def from_account(
        cls, account: CloudAccount, settings: Settings | None = None
    ) -> "CloudProviderAdapter":
        """Build the adapter from a stored account and its credentials document."""
        raise NotImplementedError()

    @abstractmethod
    async def fetch_billing(self) -> BillingSnapshot:
        """Return month-to-date spend. Raises CollectorError on failure."""
        raise NotImplementedError()

    @abstractmethod
    async def list_running_instances(self) -> list[ComputeInstance]:
        raise NotImplementedError()

    @abstractmethod
    async def stop_instance(self, instance: ComputeInstance) -> None:
        raise NotImplementedError()

    @abstractmethod
    async def terminate_instance(self, instance: ComputeInstance) -> None:
        raise NotImplementedError()

    @abstractmethod
    async def cpu_utilization_samples(
        self, instance: ComputeInstance, start: datetime, end: datetime
    ) -> list[float]:
        """Hourly average CPU utilisation (percent) over the window."""
        raise NotImplementedError()

    @abstractmethod
    def size_level(self, instance_type: str) -> int:
        raise NotImplementedError()

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "CloudProviderAdapter":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def is_essential(self, instance: ComputeInstance) -> bool:
        return has_essential_marker(
            instance.tags,
            self.settings.ESSENTIAL_TAG_KEY,
            self.settings.ESSENTIAL_TAG_VALUE,
        )

    async def _bounded(self, call: Awaitable[Any]) -> Any:
        """Run one provider call under REMEDIATION_TIMEOUT_SECONDS."""
        timeout = self.settings.REMEDIATION_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"{self.kind} call timed out after {timeout}s") from e

    async def _running_instances(self, action: str) -> list[ComputeInstance]:
        try:
            return await self._bounded(self.list_running_instances())
        except RemediationError:
            raise
        except Exception as e:
            raise RemediationError(
                f"{self.kind} instance listing failed during {action}: {e}",
                details={"account_id": self.account.id},
            ) from e

    async def _apply(
        self,
        action: str,
        candidates: list[ComputeInstance],
        operation: Callable[[ComputeInstance], Awaitable[None]],
        eligible: Callable[[ComputeInstance], Awaitable[bool]] | None = None,
    ) -> RemediationReport:
        """
        Act on at most REMEDIATION_MAX_RESOURCES eligible candidates, in
        listing order. Essential resources are never acted on; a failed
        action does not consume the cap.
        """
        report = RemediationReport(action=action)
        cap = self.settings.REMEDIATION_MAX_RESOURCES

        for instance in candidates:
            if len(report.acted_on) >= cap:
                break
            if self.is_essential(instance):
                report.skipped_essential.append(instance.id)
                continue
            if eligible is not None and not await eligible(instance):
                continue
            try:
                await self._bounded(operation(instance))
            except Exception as e:
                report.failed[instance.id] = str(e)
                logger.warning(
                    "remediation_instance_failed",
                    provider=self.kind,
                    account_id=self.account.id,
                    instance_id=instance.id,
                    action=action,
                    error=str(e),
                )
                continue
            report.acted_on.append(instance.id)
            logger.info(
                "remediation_instance_succeeded",
                provider=self.kind,
                account_id=self.account.id,
                instance_id=instance.id,
                action=action,
            )

        if not report.ok:
            raise RemediationError(
                f"{action} failed for every targeted {self.kind} instance",
                details=report.as_metadata(),
            )
        return report

    async def stop_non_essential(self) -> RemediationReport:
        candidates = await self._running_instances("stop_non_essential")
        return await self._apply("stop_non_essential", candidates, self.stop_instance)

    async def terminate_oversized(self, max_size_level: int) -> RemediationReport:
        candidates = await self._running_instances("terminate_oversized")
        oversized = [
            i for i in candidates if self.size_level(i.instance_type) > max_size_level
        ]
        return await self._apply("terminate_oversized", oversized, self.terminate_instance)

    async def stop_idle(self, idle_hours: float) -> RemediationReport:
        candidates = await self._running_instances("stop_idle")
        end = datetime.now(timezone.utc)
        start = end - timedelta(hours=idle_hours)
        threshold = self.settings.IDLE_CPU_THRESHOLD_PERCENT

        async def is_idle(instance: ComputeInstance) -> bool:
            try:
                samples = await self._bounded(
                    self.cpu_utilization_samples(instance, start, end)
                )
            except Exception as e:
                logger.warning(
                    "idle_metrics_unavailable",
                    provider=self.kind,
                    instance_id=instance.id,
                    error=str(e),
                )
                return False
            # No datapoints means no evidence of idleness.
            return bool(samples) and all(sample <= threshold for sample in samples)

        return await self._apply("stop_idle", candidates, self.stop_instance, is_idle)


async def run_blocking(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Run a synchronous SDK call off the event loop."""
    return await asyncio.to_thread(func, *args, **kwargs)
