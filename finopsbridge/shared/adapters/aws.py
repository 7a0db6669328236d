from __future__ import annotations

from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any, Optional

import aioboto3
import structlog
import tenacity
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from finopsbridge.models.cloud import CloudAccount, ProviderKind
from finopsbridge.shared.adapters.base import (
    BillingSnapshot,
    CloudProviderAdapter,
    ComputeInstance,
)
from finopsbridge.shared.adapters.registry import ProviderRegistry
from finopsbridge.shared.adapters.sizing import aws_size_level
from finopsbridge.shared.core.config import Settings, get_settings
from finopsbridge.shared.core.credentials import AWSCredentials, parse_credentials
from finopsbridge.shared.core.exceptions import CollectorError

logger = structlog.get_logger()

# Standardized boto config with timeouts to prevent indefinite hangs
DEFAULT_BOTO_CONFIG = BotoConfig(
    read_timeout=10, connect_timeout=5, retries={"max_attempts": 2, "mode": "standard"}
)

AWS_CREDENTIAL_MAPPING = {
    "AccessKeyId": "aws_access_key_id",
    "SecretAccessKey": "aws_secret_access_key",
    "SessionToken": "aws_session_token",
}


def with_aws_retry(func: Any) -> Any:
    """Exponential backoff for transient AWS connection failures."""

    def _build_retry_config() -> dict[str, Any]:
        config: dict[str, Any] = {
            "retry": tenacity.retry_if_exception_type(
                (ConnectTimeoutError, ReadTimeoutError, EndpointConnectionError)
            ),
            "wait": tenacity.wait_exponential(multiplier=1, min=1, max=4),
            "stop": tenacity.stop_after_attempt(3),
            "reraise": True,
        }
        if get_settings().TESTING:
            config["wait"] = tenacity.wait_none()
        return config

    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        retrying = tenacity.AsyncRetrying(**_build_retry_config())
        async for attempt in retrying:
            with attempt:
                return await func(*args, **kwargs)

    return wrapper


def _tags_to_dict(tags: list[dict[str, Any]] | None) -> dict[str, str]:
    return {str(t.get("Key")): str(t.get("Value") or "") for t in tags or [] if t.get("Key")}


@ProviderRegistry.register(ProviderKind.AWS.value)
class AWSAdapter(CloudProviderAdapter):
    """
    AWS variant using aioboto3.

    The worker assumes the customer's IAM role (roleArn/externalId from the
    account's credentials document) and uses Cost Explorer for billing, EC2
    for instance control and CloudWatch for CPU utilisation.
    """

    def __init__(
        self,
        account: CloudAccount,
        credentials: AWSCredentials,
        settings: Settings | None = None,
    ):
        super().__init__(account, settings)
        self.credentials = credentials
        self.region = credentials.region or account.region or self.settings.AWS_REGION
        self.session = aioboto3.Session()
        self._assumed: Optional[dict[str, Any]] = None

    @classmethod
    def from_account(
        cls, account: CloudAccount, settings: Settings | None = None
    ) -> "AWSAdapter":
        return cls(account, parse_credentials(account.credentials, AWSCredentials), settings)

    @with_aws_retry
    async def _assume_role(self) -> dict[str, str]:
        if self._assumed is not None:
            expires_at = self._assumed.get("Expiration")
            if not isinstance(expires_at, datetime) or datetime.now(timezone.utc) < expires_at:
                return {
                    dst: self._assumed[src]
                    for src, dst in AWS_CREDENTIAL_MAPPING.items()
                    if src in self._assumed
                }

        params: dict[str, Any] = {
            "RoleArn": self.credentials.role_arn,
            "RoleSessionName": self.settings.AWS_ROLE_SESSION_NAME,
            "DurationSeconds": 3600,
        }
        if self.credentials.external_id:
            params["ExternalId"] = self.credentials.external_id

        async with self.session.client(
            "sts", region_name=self.region, config=DEFAULT_BOTO_CONFIG
        ) as sts:
            response = await sts.assume_role(**params)
        self._assumed = response["Credentials"]
        logger.info("sts_assume_role_success", account_id=self.account.id)
        return {
            dst: self._assumed[src]
            for src, dst in AWS_CREDENTIAL_MAPPING.items()
            if src in self._assumed
        }

    async def _client(self, service_name: str, region: str | None = None) -> Any:
        kwargs: dict[str, Any] = {
            "region_name": region or self.region,
            "config": DEFAULT_BOTO_CONFIG,
        }
        if self.settings.AWS_ENDPOINT_URL:
            kwargs["endpoint_url"] = self.settings.AWS_ENDPOINT_URL
        kwargs.update(await self._assume_role())
        return self.session.client(service_name, **kwargs)

    async def fetch_billing(self) -> BillingSnapshot:
        today = datetime.now(timezone.utc).date()
        start = today.replace(day=1)
        # Cost Explorer's End is exclusive and must be after Start.
        end = today + timedelta(days=1)
        try:
            # Cost Explorer is a global API served from us-east-1.
            async with await self._client("ce", region="us-east-1") as ce:
                response = await ce.get_cost_and_usage(
                    TimePeriod={"Start": start.isoformat(), "End": end.isoformat()},
                    Granularity="MONTHLY",
                    Metrics=["BlendedCost"],
                )
        except (ClientError, BotoCoreError) as e:
            raise CollectorError(
                f"AWS Cost Explorer request failed: {e}",
                details={"account_id": self.account.id},
            ) from e

        monthly_spend = 0.0
        currency = "USD"
        results = response.get("ResultsByTime") or []
        if results:
            blended = results[0].get("Total", {}).get("BlendedCost", {})
            monthly_spend = float(blended.get("Amount") or 0.0)
            currency = str(blended.get("Unit") or currency)
        return BillingSnapshot(
            monthly_spend=monthly_spend,
            currency=currency,
            extra={"region": self.region},
        )

    @with_aws_retry
    async def list_running_instances(self) -> list[ComputeInstance]:
        instances: list[ComputeInstance] = []
        async with await self._client("ec2") as ec2:
            paginator = ec2.get_paginator("describe_instances")
            async for page in paginator.paginate(
                Filters=[{"Name": "instance-state-name", "Values": ["running"]}]
            ):
                for reservation in page.get("Reservations", []):
                    for raw in reservation.get("Instances", []):
                        tags = _tags_to_dict(raw.get("Tags"))
                        instances.append(
                            ComputeInstance(
                                id=raw["InstanceId"],
                                name=tags.get("Name", raw["InstanceId"]),
                                instance_type=str(raw.get("InstanceType") or ""),
                                tags=tags,
                                location=self.region,
                            )
                        )
        return instances

    async def stop_instance(self, instance: ComputeInstance) -> None:
        async with await self._client("ec2") as ec2:
            await ec2.stop_instances(InstanceIds=[instance.id])

    async def terminate_instance(self, instance: ComputeInstance) -> None:
        async with await self._client("ec2") as ec2:
            await ec2.terminate_instances(InstanceIds=[instance.id])

    async def cpu_utilization_samples(
        self, instance: ComputeInstance, start: datetime, end: datetime
    ) -> list[float]:
        async with await self._client("cloudwatch") as cloudwatch:
            response = await cloudwatch.get_metric_statistics(
                Namespace="AWS/EC2",
                MetricName="CPUUtilization",
                Dimensions=[{"Name": "InstanceId", "Value": instance.id}],
                StartTime=start,
                EndTime=end,
                Period=3600,
                Statistics=["Average"],
            )
        return [
            float(point["Average"])
            for point in response.get("Datapoints", [])
            if point.get("Average") is not None
        ]

    def size_level(self, instance_type: str) -> int:
        return aws_size_level(instance_type)
