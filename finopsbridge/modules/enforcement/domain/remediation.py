"""
Remediation dispatch.

Maps a violated policy's type to one provider capability and records the
outcome. Caps, the Essential exclusion and per-call timeouts live in the
adapter base class so every provider honours them; this layer owns ledger
transitions and the audit trail. Failed remediations are never retried: the
violation stays pending and the dedup key keeps it from being re-created.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Type

import structlog

from finopsbridge.models.activity_log import ActivityLog, ActivityType
from finopsbridge.models.cloud import CloudAccount
from finopsbridge.models.policy import Policy, PolicyType
from finopsbridge.models.violation import Violation
from finopsbridge.modules.enforcement.domain.ledger import ViolationLedger
from finopsbridge.modules.enforcement.domain.repository import EnforcementRepository
from finopsbridge.shared.adapters.base import CloudProviderAdapter, RemediationReport
from finopsbridge.shared.adapters.registry import ProviderRegistry
from finopsbridge.shared.adapters.sizing import max_size_level_from_config
from finopsbridge.shared.core.config import Settings, get_settings
from finopsbridge.shared.core.exceptions import (
    FinOpsBridgeError,
    RemediationError,
    RepositoryError,
)
from finopsbridge.shared.core.logging import audit_log

logger = structlog.get_logger()

ACTION_NONE = "none"
ACTION_STOP_NON_ESSENTIAL = "stop_non_essential"
ACTION_TERMINATE_OVERSIZED = "terminate_oversized"
ACTION_STOP_IDLE = "stop_idle"

ACTION_BY_POLICY_TYPE: dict[str, str] = {
    PolicyType.MAX_SPEND.value: ACTION_STOP_NON_ESSENTIAL,
    PolicyType.BLOCK_INSTANCE_TYPE.value: ACTION_TERMINATE_OVERSIZED,
    PolicyType.AUTO_STOP_IDLE.value: ACTION_STOP_IDLE,
    # require_tags and unknown types only notify
}


@dataclass
class RemediationOutcome:
    action: str
    attempted: bool
    succeeded: bool
    report: Optional[RemediationReport] = None
    error: Optional[str] = None
    # False when an operator resolved the violation before the worker marked it
    transitioned: bool = False

    @property
    def remediated(self) -> bool:
        return self.attempted and self.succeeded and self.transitioned


def action_for(policy_type: str) -> str:
    return ACTION_BY_POLICY_TYPE.get(str(policy_type or "").strip().lower(), ACTION_NONE)


async def record_activity(repository: EnforcementRepository, entry: ActivityLog) -> bool:
    """Append an audit entry. The trail is best-effort: a store failure is logged, never raised."""
    try:
        await repository.create_activity_log(entry)
    except RepositoryError as e:
        logger.error(
            "activity_log_write_failed",
            organization_id=entry.organization_id,
            activity_type=entry.type,
            code=e.code,
            error=e.message,
        )
        return False
    return True


class RemediationDispatcher:
    def __init__(
        self,
        repository: EnforcementRepository,
        ledger: ViolationLedger,
        registry: Type[ProviderRegistry] = ProviderRegistry,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.ledger = ledger
        self.registry = registry
        self.settings = settings or get_settings()

    def _operation(
        self, action: str, policy: Policy, adapter: CloudProviderAdapter
    ) -> Callable[[], Awaitable[RemediationReport]]:
        config: dict[str, Any] = policy.config or {}
        if action == ACTION_STOP_NON_ESSENTIAL:
            return adapter.stop_non_essential
        if action == ACTION_TERMINATE_OVERSIZED:
            max_level = max_size_level_from_config(config)
            if max_level is None:
                raise RemediationError(
                    "block_instance_type policy has no usable maxSize",
                    code="remediation_misconfigured",
                    details={"policy_id": policy.id, "config": config},
                )
            return lambda: adapter.terminate_oversized(max_level)
        if action == ACTION_STOP_IDLE:
            try:
                idle_hours = float(config.get("idleHours") or self.settings.DEFAULT_IDLE_HOURS)
            except (TypeError, ValueError) as e:
                raise RemediationError(
                    "auto_stop_idle policy has a non-numeric idleHours",
                    code="remediation_misconfigured",
                    details={"policy_id": policy.id, "config": config},
                ) from e
            if idle_hours <= 0:
                raise RemediationError(
                    "auto_stop_idle policy idleHours must be positive",
                    code="remediation_misconfigured",
                    details={"policy_id": policy.id, "config": config},
                )
            return lambda: adapter.stop_idle(idle_hours)
        raise RemediationError(f"Unknown remediation action {action}")

    async def _run(
        self,
        action: str,
        policy: Policy,
        account: CloudAccount,
        adapter: Optional[CloudProviderAdapter],
    ) -> RemediationReport:
        if adapter is not None:
            return await self._operation(action, policy, adapter)()

        async with self.registry.get_adapter(account, self.settings) as owned:
            return await self._operation(action, policy, owned)()

    async def remediate(
        self,
        policy: Policy,
        account: CloudAccount,
        violation: Violation,
        adapter: Optional[CloudProviderAdapter] = None,
    ) -> RemediationOutcome:
        """
        Apply the remediation mapped to `policy.type` against `account`.

        Never raises for provider or store failures; the outcome says what
        happened.
        """
        action = action_for(policy.type)
        if action == ACTION_NONE:
            logger.info(
                "remediation_not_applicable",
                policy_id=policy.id,
                policy_type=policy.type,
                violation_id=violation.id,
            )
            return RemediationOutcome(action=action, attempted=False, succeeded=False)

        try:
            report = await self._run(action, policy, account, adapter)
        except FinOpsBridgeError as e:
            return await self._record_failure(
                policy, account, violation, action, e.message, details=e.details
            )
        except Exception as e:
            # SDK errors surfacing outside the per-instance guard
            return await self._record_failure(policy, account, violation, action, str(e))

        return await self._record_success(policy, account, violation, action, report)

    async def _record_success(
        self,
        policy: Policy,
        account: CloudAccount,
        violation: Violation,
        action: str,
        report: RemediationReport,
    ) -> RemediationOutcome:
        try:
            transitioned = await self.ledger.mark_remediated(violation)
        except RepositoryError as e:
            logger.error(
                "violation_transition_failed",
                violation_id=violation.id,
                code=e.code,
                error=e.message,
            )
            transitioned = False
        metadata = {
            "policyId": policy.id,
            "violationId": violation.id,
            "accountId": account.id,
            "transitioned": transitioned,
            **report.as_metadata(),
        }
        if transitioned:
            message = f"Policy '{policy.name}' violation remediated"
        else:
            message = (
                f"Policy '{policy.name}' remediation applied; "
                "violation was no longer pending"
            )
        await record_activity(
            self.repository,
            ActivityLog(
                organization_id=policy.organization_id,
                type=ActivityType.REMEDIATION.value,
                message=message,
                event_metadata=metadata,
            )
        )
        audit_log("remediation_succeeded", policy.organization_id, metadata)
        return RemediationOutcome(
            action=action,
            attempted=True,
            succeeded=True,
            report=report,
            transitioned=transitioned,
        )

    async def _record_failure(
        self,
        policy: Policy,
        account: CloudAccount,
        violation: Violation,
        action: str,
        error: str,
        details: Optional[dict[str, Any]] = None,
    ) -> RemediationOutcome:
        logger.error(
            "remediation_failed",
            policy_id=policy.id,
            violation_id=violation.id,
            account_id=account.id,
            action=action,
            error=error,
        )
        await record_activity(
            self.repository,
            ActivityLog(
                organization_id=policy.organization_id,
                type=ActivityType.REMEDIATION_FAILED.value,
                message=f"Policy '{policy.name}' remediation failed: {error}",
                event_metadata={
                    "policyId": policy.id,
                    "violationId": violation.id,
                    "accountId": account.id,
                    "action": action,
                    "error": error,
                    **({"details": details} if details else {}),
                },
            )
        )
        return RemediationOutcome(
            action=action, attempted=True, succeeded=False, error=error
        )
