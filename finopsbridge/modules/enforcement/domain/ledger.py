from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

import structlog

from finopsbridge.models.cloud import CloudAccount
from finopsbridge.models.policy import Policy
from finopsbridge.models.violation import Violation, ViolationSeverity, ViolationStatus
from finopsbridge.modules.enforcement.domain.repository import EnforcementRepository
from finopsbridge.shared.core.config import Settings, get_settings
from finopsbridge.shared.core.exceptions import ViolationConflictError

logger = structlog.get_logger()

RESOURCE_TYPE_ACCOUNT = "cloud_provider"

_VALID_SEVERITIES = {s.value for s in ViolationSeverity}


class ViolationLedger:
    """
    Owns violation deduplication and lifecycle transitions.

    The dedup key is the policy id: while a policy has a pending violation,
    further breaches of it (from any account) are suppressed. Within the
    process the check-then-create runs under a per-policy lock; across
    processes the partial unique index on pending rows is the backstop.
    """

    def __init__(
        self,
        repository: EnforcementRepository,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.settings = settings or get_settings()
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def severity_for(self, policy: Policy) -> str:
        override = str((policy.config or {}).get("severity") or "").strip().lower()
        if override in _VALID_SEVERITIES:
            return override
        return self.settings.severity_for(policy.type)

    async def record_if_new(
        self,
        policy: Policy,
        account: CloudAccount,
        message: str,
        now: Optional[datetime] = None,
    ) -> tuple[bool, Violation]:
        async with self._locks[policy.id]:
            existing = await self.repository.find_pending_violation(policy.id)
            if existing is not None:
                logger.info(
                    "violation_suppressed_pending_exists",
                    policy_id=policy.id,
                    violation_id=existing.id,
                    account_id=account.id,
                )
                return False, existing

            violation = Violation(
                policy_id=policy.id,
                resource_id=account.id,
                resource_type=RESOURCE_TYPE_ACCOUNT,
                cloud_provider=account.type,
                message=message,
                severity=self.severity_for(policy),
                status=ViolationStatus.PENDING,
                created_at=now or datetime.now(timezone.utc),
            )
            try:
                created = await self.repository.create_violation(violation)
            except ViolationConflictError:
                # Another worker won the race; report its row instead.
                winner = await self.repository.find_pending_violation(policy.id)
                if winner is None:
                    raise
                logger.info(
                    "violation_conflict_resolved",
                    policy_id=policy.id,
                    violation_id=winner.id,
                )
                return False, winner

        logger.info(
            "violation_created",
            policy_id=policy.id,
            violation_id=created.id,
            account_id=account.id,
            severity=created.severity,
        )
        return True, created

    async def mark_remediated(
        self, violation: Violation, at: Optional[datetime] = None
    ) -> bool:
        """pending -> remediated. Terminal violations are left untouched."""
        if violation.is_terminal:
            logger.warning(
                "violation_transition_refused",
                violation_id=violation.id,
                status=violation.status.value,
            )
            return False

        remediated_at = at or datetime.now(timezone.utc)
        candidate = Violation(
            id=violation.id,
            policy_id=violation.policy_id,
            message=violation.message,
            status=ViolationStatus.REMEDIATED,
            remediated_at=remediated_at,
        )
        updated = await self.repository.update_violation(
            candidate, expected_status=ViolationStatus.PENDING
        )
        if not updated:
            # An operator resolved it while remediation was running.
            logger.warning("violation_no_longer_pending", violation_id=violation.id)
            return False

        violation.status = ViolationStatus.REMEDIATED
        violation.remediated_at = remediated_at
        return True
