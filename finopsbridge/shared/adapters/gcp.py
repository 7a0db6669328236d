from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from google.api_core.exceptions import GoogleAPIError
from google.cloud import bigquery, compute_v1, monitoring_v3
from google.oauth2 import service_account

from finopsbridge.models.cloud import CloudAccount, ProviderKind
from finopsbridge.shared.adapters.base import (
    BillingSnapshot,
    CloudProviderAdapter,
    ComputeInstance,
    run_blocking,
)
from finopsbridge.shared.adapters.registry import ProviderRegistry
from finopsbridge.shared.adapters.sizing import gcp_size_level
from finopsbridge.shared.core.config import Settings
from finopsbridge.shared.core.credentials import GCPCredentials, parse_credentials
from finopsbridge.shared.core.exceptions import CollectorError, ConfigurationError

logger = structlog.get_logger()

CPU_METRIC = "compute.googleapis.com/instance/cpu/utilization"


@ProviderRegistry.register(ProviderKind.GCP.value)
class GCPAdapter(CloudProviderAdapter):
    """
    GCP variant. Spend comes from the Cloud Billing BigQuery export (GCP has
    no synchronous month-to-date cost API); instances from Compute Engine;
    CPU from Cloud Monitoring. The Google clients are synchronous, so every
    call is pushed onto a worker thread.
    """

    def __init__(
        self,
        account: CloudAccount,
        credentials: GCPCredentials,
        settings: Settings | None = None,
    ):
        super().__init__(account, settings)
        if not account.project_id:
            raise ConfigurationError(
                "GCP account is missing project_id",
                details={"account_id": account.id},
            )
        self.project_id = account.project_id
        self.credentials = credentials
        self._google_credentials: Optional[Any] = None
        self._instances_client: Optional[compute_v1.InstancesClient] = None

    @classmethod
    def from_account(
        cls, account: CloudAccount, settings: Settings | None = None
    ) -> "GCPAdapter":
        return cls(account, parse_credentials(account.credentials, GCPCredentials), settings)

    def _get_google_credentials(self) -> Any:
        if self._google_credentials is None:
            info = self.credentials.service_account_info()
            if info is not None:
                self._google_credentials = (
                    service_account.Credentials.from_service_account_info(info)
                )
        # None lets the client libraries fall back to workload identity / ADC.
        return self._google_credentials

    def _get_instances_client(self) -> compute_v1.InstancesClient:
        if self._instances_client is None:
            self._instances_client = compute_v1.InstancesClient(
                credentials=self._get_google_credentials()
            )
        return self._instances_client

    def _billing_table(self) -> str:
        creds = self.credentials
        if not (creds.billing_dataset and creds.billing_table):
            raise CollectorError(
                "GCP billing export location (billingDataset/billingTable) is not configured",
                code="billing_export_missing",
                details={"account_id": self.account.id},
            )
        billing_project = creds.billing_project_id or self.project_id
        return f"`{billing_project}.{creds.billing_dataset}.{creds.billing_table}`"

    def _query_month_to_date(self) -> tuple[float, str]:
        client = bigquery.Client(
            project=self.credentials.billing_project_id or self.project_id,
            credentials=self._get_google_credentials(),
        )
        query = (
            "SELECT SUM(cost) AS total, ANY_VALUE(currency) AS currency "
            f"FROM {self._billing_table()} "
            "WHERE invoice.month = @invoice_month AND project.id = @project_id"
        )
        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter(
                    "invoice_month", "STRING", datetime.now(timezone.utc).strftime("%Y%m")
                ),
                bigquery.ScalarQueryParameter("project_id", "STRING", self.project_id),
            ]
        )
        rows = list(client.query(query, job_config=job_config).result())
        if not rows:
            return 0.0, "USD"
        return float(rows[0]["total"] or 0.0), str(rows[0]["currency"] or "USD")

    async def fetch_billing(self) -> BillingSnapshot:
        table = self._billing_table()
        try:
            total, currency = await run_blocking(self._query_month_to_date)
        except GoogleAPIError as e:
            raise CollectorError(
                f"GCP billing export query failed: {e}",
                details={"account_id": self.account.id, "table": table},
            ) from e
        return BillingSnapshot(monthly_spend=total, currency=currency)

    def _list_running(self) -> list[ComputeInstance]:
        client = self._get_instances_client()
        instances: list[ComputeInstance] = []
        request = compute_v1.AggregatedListInstancesRequest(
            project=self.project_id, filter='status = "RUNNING"'
        )
        for scope, scoped_list in client.aggregated_list(request=request):
            zone = scope.rsplit("/", 1)[-1]
            for raw in scoped_list.instances or []:
                instances.append(
                    ComputeInstance(
                        id=str(raw.id),
                        name=raw.name,
                        instance_type=raw.machine_type.rsplit("/", 1)[-1],
                        tags=dict(raw.labels or {}),
                        location=zone,
                        attributes={"zone": zone},
                    )
                )
        return instances

    async def list_running_instances(self) -> list[ComputeInstance]:
        return await run_blocking(self._list_running)

    async def stop_instance(self, instance: ComputeInstance) -> None:
        client = self._get_instances_client()

        def _stop() -> None:
            operation = client.stop(
                project=self.project_id,
                zone=instance.attributes["zone"],
                instance=instance.name,
            )
            operation.result()

        await run_blocking(_stop)

    async def terminate_instance(self, instance: ComputeInstance) -> None:
        client = self._get_instances_client()

        def _delete() -> None:
            operation = client.delete(
                project=self.project_id,
                zone=instance.attributes["zone"],
                instance=instance.name,
            )
            operation.result()

        await run_blocking(_delete)

    async def cpu_utilization_samples(
        self, instance: ComputeInstance, start: datetime, end: datetime
    ) -> list[float]:
        def _query() -> list[float]:
            client = monitoring_v3.MetricServiceClient(
                credentials=self._get_google_credentials()
            )
            interval = monitoring_v3.TimeInterval(start_time=start, end_time=end)
            aggregation = monitoring_v3.Aggregation(
                alignment_period={"seconds": 3600},
                per_series_aligner=monitoring_v3.Aggregation.Aligner.ALIGN_MEAN,
            )
            series = client.list_time_series(
                request={
                    "name": f"projects/{self.project_id}",
                    "filter": (
                        f'metric.type = "{CPU_METRIC}" '
                        f'AND resource.labels.instance_id = "{instance.id}"'
                    ),
                    "interval": interval,
                    "aggregation": aggregation,
                    "view": monitoring_v3.ListTimeSeriesRequest.TimeSeriesView.FULL,
                }
            )
            # Utilisation is reported as a 0-1 fraction.
            return [
                float(point.value.double_value) * 100.0
                for ts in series
                for point in ts.points
            ]

        return await run_blocking(_query)

    def size_level(self, instance_type: str) -> int:
        return gcp_size_level(instance_type)
