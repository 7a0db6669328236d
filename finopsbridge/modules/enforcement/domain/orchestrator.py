"""
Enforcement loop.

One tick: load enabled policies and connected accounts, then per account
(concurrently, bounded by a semaphore) fetch billing, refresh the stored
spend, evaluate the organization's policies, and for every new violation
record it, remediate and notify.

Only a failure to list policies/accounts aborts a tick. Everything below
that is isolated per account and then per policy, and every external call
is bounded by a timeout.
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Type

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from finopsbridge.models.activity_log import ActivityLog, ActivityType
from finopsbridge.models.cloud import CloudAccount
from finopsbridge.models.policy import Policy
from finopsbridge.modules.enforcement.domain.ledger import ViolationLedger
from finopsbridge.modules.enforcement.domain.remediation import (
    RemediationDispatcher,
    record_activity,
)
from finopsbridge.modules.enforcement.domain.repository import EnforcementRepository
from finopsbridge.modules.enforcement.domain.rules import FailMode, RuleEvaluator
from finopsbridge.modules.notifications.domain.fanout import NotificationFanout
from finopsbridge.shared.adapters.base import BillingSnapshot, CloudProviderAdapter
from finopsbridge.shared.adapters.registry import ProviderRegistry
from finopsbridge.shared.core.config import Settings, get_settings
from finopsbridge.shared.core.exceptions import FinOpsBridgeError, RepositoryError
from finopsbridge.shared.core.logging import audit_log

logger = structlog.get_logger()

ENFORCEMENT_JOB_ID = "enforcement_tick"
RULE_REFRESH_JOB_ID = "rule_cache_refresh"


@dataclass
class AccountResult:
    account_id: str
    processed: bool = False
    policies_evaluated: int = 0
    violations_created: int = 0
    remediations_succeeded: int = 0
    error: Optional[str] = None


@dataclass
class TickResult:
    started_at: datetime
    skipped: bool = False
    aborted: bool = False
    accounts_processed: int = 0
    accounts_failed: int = 0
    policies_evaluated: int = 0
    violations_created: int = 0
    remediations_succeeded: int = 0
    duration_seconds: float = 0.0
    accounts: list[AccountResult] = field(default_factory=list)


def build_input_document(
    account: CloudAccount, snapshot: BillingSnapshot, policy: Policy
) -> dict[str, Any]:
    """Account identity, then the billing snapshot over it, then the policy config."""
    document: dict[str, Any] = {
        "account_id": account.account_id,
        "subscription_id": account.subscription_id,
        "project_id": account.project_id,
        "tenancy_id": account.tenancy_id,
        "monthly_spend": account.monthly_spend,
        "provider_type": account.type,
        "region": account.region,
    }
    document.update(snapshot.as_document())
    document["config"] = dict(policy.config or {})
    return document


class EnforcementOrchestrator:
    def __init__(
        self,
        repository: EnforcementRepository,
        evaluator: RuleEvaluator,
        ledger: ViolationLedger,
        dispatcher: RemediationDispatcher,
        fanout: NotificationFanout,
        registry: Type[ProviderRegistry] = ProviderRegistry,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.evaluator = evaluator
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.fanout = fanout
        self.registry = registry
        self.settings = settings or get_settings()
        self.scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._tick_lock = asyncio.Lock()
        self._stopping = False
        self.last_result: Optional[TickResult] = None

    async def run(self, now: Optional[datetime] = None) -> TickResult:
        """Execute one tick. Returns immediately (skipped) if one is already running."""
        now = now or datetime.now(timezone.utc)
        if self._stopping or self._tick_lock.locked():
            logger.warning(
                "enforcement_tick_skipped",
                reason="stopping" if self._stopping else "previous_tick_running",
            )
            return TickResult(started_at=now, skipped=True)

        async with self._tick_lock:
            started = time.monotonic()
            result = await self._tick(now)
            result.duration_seconds = round(time.monotonic() - started, 3)
            self.last_result = result
            logger.info(
                "enforcement_tick_completed",
                aborted=result.aborted,
                accounts_processed=result.accounts_processed,
                accounts_failed=result.accounts_failed,
                policies_evaluated=result.policies_evaluated,
                violations_created=result.violations_created,
                remediations_succeeded=result.remediations_succeeded,
                duration_seconds=result.duration_seconds,
            )
            return result

    async def _tick(self, now: datetime) -> TickResult:
        result = TickResult(started_at=now)
        try:
            policies = await self.repository.find_enabled_policies()
            accounts = await self.repository.find_connected_accounts()
        except RepositoryError as e:
            logger.error("enforcement_tick_aborted", code=e.code, error=e.message)
            result.aborted = True
            return result

        if not accounts:
            logger.info("enforcement_tick_no_accounts")
            return result

        policies_by_org: defaultdict[str, list[Policy]] = defaultdict(list)
        for policy in policies:
            policies_by_org[policy.organization_id].append(policy)

        semaphore = asyncio.Semaphore(
            min(len(accounts), self.settings.ENFORCEMENT_MAX_CONCURRENCY)
        )

        async def _bounded(account: CloudAccount) -> AccountResult:
            async with semaphore:
                return await self._process_account(
                    account, policies_by_org.get(account.organization_id, []), now
                )

        outcomes = await asyncio.gather(
            *(_bounded(account) for account in accounts), return_exceptions=True
        )

        for account, outcome in zip(accounts, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(
                    "enforcement_account_crashed",
                    account_id=account.id,
                    error=str(outcome),
                    exc_info=outcome,
                )
                outcome = AccountResult(account_id=account.id, error=str(outcome))
            result.accounts.append(outcome)
            if outcome.processed:
                result.accounts_processed += 1
            else:
                result.accounts_failed += 1
            result.policies_evaluated += outcome.policies_evaluated
            result.violations_created += outcome.violations_created
            result.remediations_succeeded += outcome.remediations_succeeded
        return result

    async def _fetch_billing(
        self, adapter: CloudProviderAdapter, account: CloudAccount
    ) -> Optional[BillingSnapshot]:
        try:
            return await asyncio.wait_for(
                adapter.fetch_billing(), timeout=self.settings.BILLING_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            error = f"billing fetch timed out after {self.settings.BILLING_TIMEOUT_SECONDS}s"
            code = "collector_timeout"
        except FinOpsBridgeError as e:
            error, code = e.message, e.code
        except Exception as e:
            error, code = str(e), "collector_error"
        logger.error(
            "billing_fetch_failed",
            account_id=account.id,
            provider=account.type,
            code=code,
            error=error,
        )
        return None

    async def _process_account(
        self, account: CloudAccount, policies: list[Policy], now: datetime
    ) -> AccountResult:
        outcome = AccountResult(account_id=account.id)
        try:
            adapter = self.registry.get_adapter(account, self.settings)
        except FinOpsBridgeError as e:
            logger.error(
                "billing_fetch_failed",
                account_id=account.id,
                provider=account.type,
                code=e.code,
                error=e.message,
            )
            outcome.error = e.message
            return outcome

        async with adapter:
            snapshot = await self._fetch_billing(adapter, account)
            if snapshot is None:
                outcome.error = "billing fetch failed"
                return outcome

            try:
                await self.repository.update_account_spend(account.id, snapshot.monthly_spend)
                account.monthly_spend = snapshot.monthly_spend
            except RepositoryError as e:
                # Evaluation still uses the fresh snapshot.
                logger.warning(
                    "account_spend_update_failed", account_id=account.id, error=e.message
                )

            outcome.processed = True
            for policy in policies:
                try:
                    created, remediated = await self._enforce_policy(
                        policy, account, snapshot, adapter, now
                    )
                except Exception as e:
                    logger.error(
                        "policy_enforcement_failed",
                        policy_id=policy.id,
                        account_id=account.id,
                        error=str(e),
                        exc_info=True,
                    )
                    continue
                outcome.policies_evaluated += 1
                outcome.violations_created += int(created)
                outcome.remediations_succeeded += int(remediated)
        return outcome

    async def _enforce_policy(
        self,
        policy: Policy,
        account: CloudAccount,
        snapshot: BillingSnapshot,
        adapter: CloudProviderAdapter,
        now: datetime,
    ) -> tuple[bool, bool]:
        fail_mode = FailMode.resolve(
            (policy.config or {}).get("failMode"), self.evaluator.default_fail_mode
        )
        decision = await self.evaluator.evaluate(
            policy.id,
            build_input_document(account, snapshot, policy),
            fail_mode=fail_mode,
        )
        if not decision.violated:
            return False, False

        created, violation = await self.ledger.record_if_new(
            policy, account, decision.message or "", now
        )
        if not created:
            return False, False

        # Best-effort: the violation row is already committed.
        await record_activity(
            self.repository,
            ActivityLog(
                organization_id=policy.organization_id,
                type=ActivityType.POLICY_VIOLATION.value,
                message=f"Policy '{policy.name}' violation: {violation.message}",
                event_metadata={
                    "policyId": policy.id,
                    "violationId": violation.id,
                    "accountId": account.id,
                    "monthlySpend": snapshot.monthly_spend,
                },
            )
        )
        audit_log(
            "policy_violation_detected",
            policy.organization_id,
            {"policy_id": policy.id, "violation_id": violation.id, "account_id": account.id},
        )

        outcome = await self.dispatcher.remediate(policy, account, violation, adapter=adapter)
        await self.fanout.notify(policy.organization_id, violation, policy)
        return True, outcome.remediated

    async def refresh_rules(self) -> None:
        try:
            await self.evaluator.refresh()
        except FinOpsBridgeError as e:
            logger.warning("rule_refresh_failed", code=e.code, error=e.message)

    def start(self) -> None:
        """Schedule the tick (first run immediately) and the rule cache poll."""
        self._stopping = False
        self.scheduler.add_job(
            self.run,
            trigger=IntervalTrigger(seconds=self.settings.ENFORCEMENT_INTERVAL_SECONDS),
            id=ENFORCEMENT_JOB_ID,
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.refresh_rules,
            trigger=IntervalTrigger(seconds=self.settings.RULE_RELOAD_INTERVAL_SECONDS),
            id=RULE_REFRESH_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(
            "enforcement_scheduler_started",
            interval_seconds=self.settings.ENFORCEMENT_INTERVAL_SECONDS,
            rule_reload_seconds=self.settings.RULE_RELOAD_INTERVAL_SECONDS,
        )

    async def stop(self) -> None:
        """Stop scheduling new ticks and wait for the in-flight tick to finish."""
        self._stopping = True
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        # Acquiring the tick lock waits out the current tick.
        async with self._tick_lock:
            pass
        logger.info("enforcement_scheduler_stopped")

    def get_status(self) -> dict[str, Any]:
        last = self.last_result
        return {
            "running": self.scheduler.running,
            "tick_in_progress": self._tick_lock.locked(),
            "last_tick_at": last.started_at.isoformat() if last else None,
            "last_tick_aborted": last.aborted if last else None,
            "jobs": [str(job.id) for job in self.scheduler.get_jobs()],
        }
