import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import select

from finopsbridge.models import ActivityLog, Violation, ViolationStatus
from finopsbridge.modules.enforcement.domain.ledger import ViolationLedger
from finopsbridge.modules.enforcement.domain.remediation import (
    ACTION_NONE,
    ACTION_STOP_IDLE,
    ACTION_STOP_NON_ESSENTIAL,
    ACTION_TERMINATE_OVERSIZED,
    RemediationDispatcher,
    action_for,
)
from finopsbridge.shared.core.exceptions import RepositoryError
from tests.utils import FakeAdapter, add_rows, make_account, make_instances, make_policy


async def _activities(session_maker) -> list[ActivityLog]:
    async with session_maker() as db:
        return list((await db.execute(select(ActivityLog))).scalars().all())


async def _stored(session_maker, violation_id: str) -> Violation:
    async with session_maker() as db:
        return await db.get(Violation, violation_id)


@pytest_asyncio.fixture
async def env(repository, settings, session_maker):
    ledger = ViolationLedger(repository, settings)
    dispatcher = RemediationDispatcher(repository, ledger, settings=settings)
    account = make_account(0, id="a0")
    await add_rows(session_maker, account)
    adapter = FakeAdapter(account, settings)

    async def record(policy):
        await add_rows(session_maker, policy)
        _, violation = await ledger.record_if_new(policy, account, "breach")
        return violation

    return dispatcher, account, adapter, record


@pytest.mark.parametrize(
    "policy_type,action",
    [
        ("max_spend", ACTION_STOP_NON_ESSENTIAL),
        ("block_instance_type", ACTION_TERMINATE_OVERSIZED),
        ("auto_stop_idle", ACTION_STOP_IDLE),
        ("require_tags", ACTION_NONE),
        ("quota_guard", ACTION_NONE),
    ],
)
def test_policy_type_mapping(policy_type, action):
    assert action_for(policy_type) == action


@pytest.mark.asyncio
async def test_max_spend_stops_capped_set_and_marks_remediated(env, session_maker):
    dispatcher, account, adapter, record = env
    adapter.instances = make_instances(10, essential={0})
    policy = make_policy(0, id="p0", name="Budget")
    violation = await record(policy)

    outcome = await dispatcher.remediate(policy, account, violation, adapter=adapter)

    assert outcome.remediated
    assert adapter.stopped == ["i-1", "i-2", "i-3", "i-4", "i-5"]
    stored = await _stored(session_maker, violation.id)
    assert stored.status is ViolationStatus.REMEDIATED
    assert stored.remediated_at is not None

    [entry] = await _activities(session_maker)
    assert entry.type == "remediation"
    assert entry.message == "Policy 'Budget' violation remediated"
    assert entry.event_metadata["policyId"] == "p0"
    assert entry.event_metadata["violationId"] == violation.id
    assert entry.event_metadata["actedOn"] == ["i-1", "i-2", "i-3", "i-4", "i-5"]
    assert entry.event_metadata["skippedEssential"] == ["i-0"]


@pytest.mark.asyncio
async def test_tagging_policy_only_notifies(env, session_maker):
    dispatcher, account, adapter, record = env
    adapter.instances = make_instances(3)
    policy = make_policy(0, id="p0", type="require_tags", config={"requiredTags": ["Owner"]})
    violation = await record(policy)

    outcome = await dispatcher.remediate(policy, account, violation, adapter=adapter)

    assert outcome.attempted is False
    assert adapter.stopped == []
    assert (await _stored(session_maker, violation.id)).status is ViolationStatus.PENDING
    assert await _activities(session_maker) == []


@pytest.mark.asyncio
async def test_block_instance_type_terminates_above_max_size(env):
    dispatcher, account, adapter, record = env
    adapter.instances = make_instances(2, prefix="s-", instance_type="t3.medium") + make_instances(
        2, prefix="b-", instance_type="m5.2xlarge"
    )
    policy = make_policy(0, id="p0", type="block_instance_type", config={"maxSize": "large"})
    violation = await record(policy)

    outcome = await dispatcher.remediate(policy, account, violation, adapter=adapter)

    assert outcome.remediated
    assert adapter.terminated == ["b-0", "b-1"]


@pytest.mark.asyncio
async def test_block_instance_type_without_size_fails_without_touching_resources(
    env, session_maker
):
    dispatcher, account, adapter, record = env
    adapter.instances = make_instances(2, instance_type="m5.24xlarge")
    policy = make_policy(0, id="p0", type="block_instance_type", config={})
    violation = await record(policy)

    outcome = await dispatcher.remediate(policy, account, violation, adapter=adapter)

    assert outcome.attempted and not outcome.succeeded
    assert adapter.terminated == []
    [entry] = await _activities(session_maker)
    assert entry.type == "remediation_failed"
    assert (await _stored(session_maker, violation.id)).status is ViolationStatus.PENDING


@pytest.mark.asyncio
async def test_auto_stop_idle_uses_configured_window(env, monkeypatch):
    dispatcher, account, adapter, record = env
    adapter.instances = make_instances(2)
    adapter.cpu = {"i-0": [0.5, 1.0], "i-1": [60.0]}
    windows = []
    original = adapter.stop_idle

    async def spy(idle_hours):
        windows.append(idle_hours)
        return await original(idle_hours)

    monkeypatch.setattr(adapter, "stop_idle", spy)
    policy = make_policy(0, id="p0", type="auto_stop_idle", config={"idleHours": 6})
    violation = await record(policy)

    outcome = await dispatcher.remediate(policy, account, violation, adapter=adapter)

    assert outcome.remediated
    assert windows == [6.0]
    assert adapter.stopped == ["i-0"]


@pytest.mark.asyncio
async def test_failed_remediation_leaves_violation_pending_and_is_not_retried(
    env, session_maker
):
    dispatcher, account, adapter, record = env
    adapter.instances = make_instances(2)
    adapter.fail_ids = {"i-0", "i-1"}
    calls = []
    original = adapter.stop_instance

    async def counting_stop(instance):
        calls.append(instance.id)
        await original(instance)

    adapter.stop_instance = counting_stop
    policy = make_policy(0, id="p0", name="Budget")
    violation = await record(policy)

    outcome = await dispatcher.remediate(policy, account, violation, adapter=adapter)

    assert outcome.attempted and not outcome.succeeded
    assert calls == ["i-0", "i-1"]
    assert (await _stored(session_maker, violation.id)).status is ViolationStatus.PENDING
    [entry] = await _activities(session_maker)
    assert entry.type == "remediation_failed"
    assert entry.event_metadata["violationId"] == violation.id


@pytest.mark.asyncio
async def test_stalled_metrics_do_not_discard_completed_stops(env, settings, session_maker):
    dispatcher, account, adapter, record = env
    settings.REMEDIATION_TIMEOUT_SECONDS = 0.1
    adapter.instances = make_instances(10)
    adapter.cpu = {f"i-{n}": [0.5] for n in range(10)}
    adapter.metrics_delays = {"i-3": 5.0}
    policy = make_policy(0, id="p0", type="auto_stop_idle", config={"idleHours": 6})
    violation = await record(policy)

    outcome = await dispatcher.remediate(policy, account, violation, adapter=adapter)

    assert outcome.remediated
    assert adapter.stopped == ["i-0", "i-1", "i-2", "i-4", "i-5"]
    assert (await _stored(session_maker, violation.id)).status is ViolationStatus.REMEDIATED
    [entry] = await _activities(session_maker)
    assert entry.type == "remediation"
    assert entry.event_metadata["actedOn"] == ["i-0", "i-1", "i-2", "i-4", "i-5"]


@pytest.mark.asyncio
async def test_stalled_listing_is_a_recorded_failure(env, settings, session_maker):
    dispatcher, account, adapter, record = env
    settings.REMEDIATION_TIMEOUT_SECONDS = 0.05

    async def hang():
        await asyncio.sleep(5)

    adapter.list_running_instances = hang
    policy = make_policy(0, id="p0")
    violation = await record(policy)

    outcome = await dispatcher.remediate(policy, account, violation, adapter=adapter)

    assert not outcome.succeeded
    assert "timed out" in outcome.error
    assert (await _stored(session_maker, violation.id)).status is ViolationStatus.PENDING


@pytest.mark.asyncio
async def test_operator_ignore_before_transition_is_reported(
    env, repository, session_maker
):
    dispatcher, account, adapter, record = env
    adapter.instances = make_instances(2)
    policy = make_policy(0, id="p0", name="Budget")
    violation = await record(policy)
    await repository.update_violation(
        Violation(
            id=violation.id,
            policy_id="p0",
            message=violation.message,
            status=ViolationStatus.IGNORED,
        )
    )

    outcome = await dispatcher.remediate(policy, account, violation, adapter=adapter)

    assert outcome.succeeded is True
    assert outcome.transitioned is False
    assert outcome.remediated is False
    assert (await _stored(session_maker, violation.id)).status is ViolationStatus.IGNORED
    [entry] = await _activities(session_maker)
    assert entry.type == "remediation"
    assert entry.message == (
        "Policy 'Budget' remediation applied; violation was no longer pending"
    )
    assert entry.event_metadata["transitioned"] is False


@pytest.mark.asyncio
async def test_activity_store_failure_does_not_fail_remediation(
    env, repository, session_maker, monkeypatch
):
    dispatcher, account, adapter, record = env
    adapter.instances = make_instances(1)
    policy = make_policy(0, id="p0")
    violation = await record(policy)
    monkeypatch.setattr(
        repository,
        "create_activity_log",
        AsyncMock(side_effect=RepositoryError("activity table locked")),
    )

    outcome = await dispatcher.remediate(policy, account, violation, adapter=adapter)

    assert outcome.remediated
    assert (await _stored(session_maker, violation.id)).status is ViolationStatus.REMEDIATED


@pytest.mark.asyncio
async def test_adapter_built_from_registry_when_not_supplied(repository, settings, session_maker):
    built = []

    class StubRegistry:
        @classmethod
        def get_adapter(cls, account, settings=None):
            adapter = FakeAdapter(account, settings, instances=make_instances(1))
            built.append(adapter)
            return adapter

    ledger = ViolationLedger(repository, settings)
    dispatcher = RemediationDispatcher(repository, ledger, registry=StubRegistry, settings=settings)
    account = make_account(0, id="a0")
    policy = make_policy(0, id="p0")
    await add_rows(session_maker, account, policy)
    _, violation = await ledger.record_if_new(policy, account, "breach")

    outcome = await dispatcher.remediate(policy, account, violation)

    assert outcome.remediated
    assert built[0].stopped == ["i-0"]
    assert built[0].closed is True
