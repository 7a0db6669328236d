from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from finopsbridge.models.activity_log import ActivityLog
from finopsbridge.models.cloud import AccountStatus, CloudAccount
from finopsbridge.models.policy import Policy
from finopsbridge.models.violation import Violation, ViolationStatus
from finopsbridge.models.webhook import Webhook
from finopsbridge.shared.core.exceptions import RepositoryError, ViolationConflictError

logger = structlog.get_logger()


class EnforcementRepository:
    """
    Store operations consumed by the enforcement worker.

    Every call opens its own short-lived session so concurrent account
    workers never share a session or a transaction.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def find_enabled_policies(self) -> list[Policy]:
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    select(Policy)
                    .where(Policy.enabled.is_(True))
                    .order_by(Policy.created_at, Policy.id)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to load enabled policies: {e}") from e

    async def find_connected_accounts(self) -> list[CloudAccount]:
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    select(CloudAccount)
                    .where(CloudAccount.status == AccountStatus.CONNECTED.value)
                    .order_by(CloudAccount.created_at, CloudAccount.id)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to load connected accounts: {e}") from e

    async def update_account_spend(self, account_id: str, monthly_spend: float) -> None:
        try:
            async with self.session_maker() as db:
                await db.execute(
                    update(CloudAccount)
                    .where(CloudAccount.id == account_id)
                    .values(monthly_spend=monthly_spend)
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise RepositoryError(
                f"Failed to update spend for account {account_id}: {e}"
            ) from e

    async def find_pending_violation(self, policy_id: str) -> Violation | None:
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    select(Violation).where(
                        Violation.policy_id == policy_id,
                        Violation.status == ViolationStatus.PENDING,
                    )
                )
                return result.scalars().first()
        except SQLAlchemyError as e:
            raise RepositoryError(
                f"Failed to look up pending violation for policy {policy_id}: {e}"
            ) from e

    async def create_violation(self, violation: Violation) -> Violation:
        try:
            async with self.session_maker() as db:
                db.add(violation)
                await db.commit()
                return violation
        except IntegrityError as e:
            raise ViolationConflictError(
                f"A pending violation already exists for policy {violation.policy_id}",
                details={"policy_id": violation.policy_id},
            ) from e
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to create violation: {e}") from e

    async def update_violation(
        self,
        violation: Violation,
        expected_status: ViolationStatus | None = None,
    ) -> bool:
        """
        Persist status/remediated_at/message. With `expected_status` the
        write only applies while the stored row is still in that status;
        returns whether a row was updated.
        """
        stmt = update(Violation).where(Violation.id == violation.id)
        if expected_status is not None:
            stmt = stmt.where(Violation.status == expected_status)
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    stmt.values(
                        status=violation.status,
                        remediated_at=violation.remediated_at,
                        message=violation.message,
                    )
                )
                await db.commit()
                return bool(result.rowcount)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to update violation {violation.id}: {e}") from e

    async def create_activity_log(self, entry: ActivityLog) -> ActivityLog:
        try:
            async with self.session_maker() as db:
                db.add(entry)
                await db.commit()
                return entry
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to append activity log: {e}") from e

    async def find_enabled_webhooks(self, organization_id: str) -> list[Webhook]:
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    select(Webhook)
                    .where(
                        Webhook.organization_id == organization_id,
                        Webhook.enabled.is_(True),
                    )
                    .order_by(Webhook.created_at, Webhook.id)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryError(
                f"Failed to load webhooks for organization {organization_id}: {e}"
            ) from e

    # Rule store

    async def get_rule_definition(self, policy_id: str) -> str | None:
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    select(Policy.rego).where(
                        Policy.id == policy_id, Policy.enabled.is_(True)
                    )
                )
                rego = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise RepositoryError(
                f"Failed to load rule definition for policy {policy_id}: {e}"
            ) from e
        return rego or None

    async def list_rule_definitions(self) -> dict[str, str]:
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    select(Policy.id, Policy.rego).where(Policy.enabled.is_(True))
                )
                rows: list[Any] = list(result.all())
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to list rule definitions: {e}") from e
        return {str(row.id): str(row.rego) for row in rows if row.rego}
