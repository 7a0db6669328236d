"""Row factories and small fakes shared by the unit tests."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from finopsbridge.models import (
    AccountStatus,
    CloudAccount,
    Policy,
    PolicyType,
    Webhook,
)
from finopsbridge.shared.adapters.base import (
    BillingSnapshot,
    CloudProviderAdapter,
    ComputeInstance,
)

ORG_ID = "org_test"
RULE_ENGINE_URL = "http://opa.test:8181"
_BASE_TIME = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_policy(seq: int = 0, **overrides: Any) -> Policy:
    values: dict[str, Any] = {
        "organization_id": ORG_ID,
        "name": f"Policy {seq}",
        "description": "test policy",
        "type": PolicyType.MAX_SPEND.value,
        "enabled": True,
        "rego": "package finopsbridge.policies\n\ndefault allow := true\n",
        "config": {"maxAmount": 10000},
        "created_at": _BASE_TIME + timedelta(minutes=seq),
    }
    values.update(overrides)
    return Policy(**values)


def make_account(seq: int = 0, **overrides: Any) -> CloudAccount:
    values: dict[str, Any] = {
        "organization_id": ORG_ID,
        "type": "aws",
        "name": f"Account {seq}",
        "account_id": f"12345678900{seq}",
        "region": "us-east-1",
        "status": AccountStatus.CONNECTED.value,
        "credentials": json.dumps({"roleArn": "arn:aws:iam::123:role/FinOps"}),
        "monthly_spend": 0.0,
        "created_at": _BASE_TIME + timedelta(minutes=seq),
    }
    values.update(overrides)
    return CloudAccount(**values)


def make_webhook(seq: int = 0, **overrides: Any) -> Webhook:
    values: dict[str, Any] = {
        "organization_id": ORG_ID,
        "type": "generic",
        "url": f"https://hooks.example.com/{seq}",
        "enabled": True,
        "created_at": _BASE_TIME + timedelta(minutes=seq),
    }
    values.update(overrides)
    return Webhook(**values)


async def add_rows(session_maker, *rows: Any) -> None:
    async with session_maker() as db:
        db.add_all(rows)
        await db.commit()


def make_instances(
    count: int, *, prefix: str = "i-", essential: Iterable[int] = (), instance_type: str = "m5.large"
) -> list[ComputeInstance]:
    essential_set = set(essential)
    return [
        ComputeInstance(
            id=f"{prefix}{n}",
            name=f"vm-{n}",
            instance_type=instance_type,
            tags={"Essential": "true"} if n in essential_set else {"team": "data"},
        )
        for n in range(count)
    ]


class FakeAdapter(CloudProviderAdapter):
    """In-memory provider variant driven by plain attributes."""

    kind = "fake"

    def __init__(self, account, settings=None, *, spend=0.0, instances=None, cpu=None):
        super().__init__(account, settings)
        self.spend = spend
        self.billing_error: Exception | None = None
        self.instances: list[ComputeInstance] = list(instances or [])
        self.cpu: dict[str, list[float]] = dict(cpu or {})
        self.fail_ids: set[str] = set()
        # Seconds to stall before answering, keyed by instance id
        self.action_delays: dict[str, float] = {}
        self.metrics_delays: dict[str, float] = {}
        self.stopped: list[str] = []
        self.terminated: list[str] = []
        self.closed = False

    @classmethod
    def from_account(cls, account, settings=None):
        return cls(account, settings)

    async def fetch_billing(self) -> BillingSnapshot:
        if self.billing_error is not None:
            raise self.billing_error
        return BillingSnapshot(monthly_spend=self.spend)

    async def list_running_instances(self) -> list[ComputeInstance]:
        return list(self.instances)

    async def stop_instance(self, instance: ComputeInstance) -> None:
        await asyncio.sleep(self.action_delays.get(instance.id, 0))
        if instance.id in self.fail_ids:
            raise RuntimeError(f"cannot stop {instance.id}")
        self.stopped.append(instance.id)

    async def terminate_instance(self, instance: ComputeInstance) -> None:
        await asyncio.sleep(self.action_delays.get(instance.id, 0))
        if instance.id in self.fail_ids:
            raise RuntimeError(f"cannot terminate {instance.id}")
        self.terminated.append(instance.id)

    async def cpu_utilization_samples(self, instance, start, end) -> list[float]:
        await asyncio.sleep(self.metrics_delays.get(instance.id, 0))
        samples = self.cpu.get(instance.id)
        if isinstance(samples, Exception):
            raise samples
        return list(samples or [])

    def size_level(self, instance_type: str) -> int:
        from finopsbridge.shared.adapters.sizing import aws_size_level

        return aws_size_level(instance_type)

    async def close(self) -> None:
        self.closed = True
