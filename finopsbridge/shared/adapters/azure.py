import logging
from datetime import datetime, timedelta
from typing import Any, Optional

import structlog
import tenacity
from azure.core.exceptions import (
    AzureError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.identity.aio import ClientSecretCredential
from azure.mgmt.compute.aio import ComputeManagementClient
from azure.mgmt.costmanagement.aio import CostManagementClient
from azure.mgmt.costmanagement.models import (
    QueryAggregation,
    QueryDataset,
    QueryDefinition,
)
from azure.mgmt.monitor.aio import MonitorManagementClient

from finopsbridge.models.cloud import CloudAccount, ProviderKind
from finopsbridge.shared.adapters.base import (
    BillingSnapshot,
    CloudProviderAdapter,
    ComputeInstance,
)
from finopsbridge.shared.adapters.registry import ProviderRegistry
from finopsbridge.shared.adapters.sizing import azure_size_level
from finopsbridge.shared.core.config import Settings
from finopsbridge.shared.core.credentials import AzureCredentials, parse_credentials
from finopsbridge.shared.core.exceptions import CollectorError, ConfigurationError

logger = structlog.get_logger()

# Retry decorator for Azure transient failures
azure_retry = tenacity.retry(
    retry=tenacity.retry_if_exception_type((ServiceRequestError, ServiceResponseError)),
    wait=tenacity.wait_exponential(multiplier=1, min=1, max=4),
    stop=tenacity.stop_after_attempt(3),
    before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
    reraise=True,
)

RUNNING_POWER_STATE = "PowerState/running"


def _resource_group_from_id(resource_id: str) -> str:
    parts = [p for p in resource_id.split("/") if p]
    for index, part in enumerate(parts[:-1]):
        if part.lower() == "resourcegroups":
            return parts[index + 1]
    return ""


@ProviderRegistry.register(ProviderKind.AZURE.value)
class AzureAdapter(CloudProviderAdapter):
    """
    Azure variant: Cost Management query for month-to-date spend, Compute
    for VM control (deallocate rather than power-off, so compute billing
    stops) and Azure Monitor for CPU.
    """

    def __init__(
        self,
        account: CloudAccount,
        credentials: AzureCredentials,
        settings: Settings | None = None,
    ):
        super().__init__(account, settings)
        if not account.subscription_id:
            raise ConfigurationError(
                "Azure account is missing subscription_id",
                details={"account_id": account.id},
            )
        self.credentials = credentials
        self.subscription_id = account.subscription_id
        self._credential: Optional[ClientSecretCredential] = None
        self._compute_client: Optional[ComputeManagementClient] = None

    @classmethod
    def from_account(
        cls, account: CloudAccount, settings: Settings | None = None
    ) -> "AzureAdapter":
        return cls(account, parse_credentials(account.credentials, AzureCredentials), settings)

    def _get_credential(self) -> ClientSecretCredential:
        if self._credential is None:
            self._credential = ClientSecretCredential(
                tenant_id=self.credentials.tenant_id,
                client_id=self.credentials.client_id,
                client_secret=self.credentials.client_secret.get_secret_value(),
            )
        return self._credential

    def _get_compute_client(self) -> ComputeManagementClient:
        if self._compute_client is None:
            self._compute_client = ComputeManagementClient(
                credential=self._get_credential(),
                subscription_id=self.subscription_id,
            )
        return self._compute_client

    async def close(self) -> None:
        if self._compute_client is not None:
            await self._compute_client.close()
            self._compute_client = None
        if self._credential is not None:
            await self._credential.close()
            self._credential = None

    @azure_retry
    async def _query_month_to_date(self) -> Any:
        query = QueryDefinition(
            type="ActualCost",
            timeframe="MonthToDate",
            dataset=QueryDataset(
                aggregation={"totalCost": QueryAggregation(name="Cost", function="Sum")}
            ),
        )
        async with CostManagementClient(credential=self._get_credential()) as client:
            return await client.query.usage(
                scope=f"/subscriptions/{self.subscription_id}", parameters=query
            )

    async def fetch_billing(self) -> BillingSnapshot:
        try:
            response = await self._query_month_to_date()
        except AzureError as e:
            raise CollectorError(
                f"Azure Cost Management query failed: {e}",
                details={"account_id": self.account.id},
            ) from e

        monthly_spend = 0.0
        currency = "USD"
        rows = list(getattr(response, "rows", None) or [])
        columns = [c.name for c in (getattr(response, "columns", None) or [])]
        if rows:
            row = rows[0]
            cost_index = columns.index("totalCost") if "totalCost" in columns else 0
            monthly_spend = float(row[cost_index] or 0.0)
            if "Currency" in columns:
                currency = str(row[columns.index("Currency")] or currency)
        return BillingSnapshot(monthly_spend=monthly_spend, currency=currency)

    @azure_retry
    async def list_running_instances(self) -> list[ComputeInstance]:
        client = self._get_compute_client()
        instances: list[ComputeInstance] = []
        # status_only returns the instance view (power state) for every VM in one call.
        async for vm in client.virtual_machines.list_all(status_only="true"):
            statuses = getattr(getattr(vm, "instance_view", None), "statuses", None) or []
            if not any(getattr(s, "code", "") == RUNNING_POWER_STATE for s in statuses):
                continue
            hardware = getattr(vm, "hardware_profile", None)
            instances.append(
                ComputeInstance(
                    id=str(vm.id),
                    name=str(vm.name),
                    instance_type=str(getattr(hardware, "vm_size", "") or ""),
                    tags={str(k): str(v or "") for k, v in (vm.tags or {}).items()},
                    location=getattr(vm, "location", None),
                    attributes={"resource_group": _resource_group_from_id(str(vm.id))},
                )
            )
        return instances

    async def stop_instance(self, instance: ComputeInstance) -> None:
        client = self._get_compute_client()
        poller = await client.virtual_machines.begin_deallocate(
            instance.attributes["resource_group"], instance.name
        )
        await poller.result()

    async def terminate_instance(self, instance: ComputeInstance) -> None:
        client = self._get_compute_client()
        poller = await client.virtual_machines.begin_delete(
            instance.attributes["resource_group"], instance.name
        )
        await poller.result()

    async def cpu_utilization_samples(
        self, instance: ComputeInstance, start: datetime, end: datetime
    ) -> list[float]:
        async with MonitorManagementClient(
            credential=self._get_credential(), subscription_id=self.subscription_id
        ) as monitor:
            response = await monitor.metrics.list(
                instance.id,
                timespan=f"{start.isoformat()}/{end.isoformat()}",
                interval=timedelta(hours=1),
                metricnames="Percentage CPU",
                aggregation="Average",
            )
        samples: list[float] = []
        for metric in response.value or []:
            for series in metric.timeseries or []:
                for point in series.data or []:
                    if point.average is not None:
                        samples.append(float(point.average))
        return samples

    def size_level(self, instance_type: str) -> int:
        return azure_size_level(instance_type)
