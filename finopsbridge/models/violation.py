from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Enum as SQLEnum, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from finopsbridge.shared.db.base import Base, new_id, utcnow


class ViolationStatus(str, Enum):
    PENDING = "pending"
    REMEDIATED = "remediated"
    IGNORED = "ignored"


class ViolationSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


TERMINAL_STATUSES = frozenset({ViolationStatus.REMEDIATED, ViolationStatus.IGNORED})


class Violation(Base):
    """
    A detected breach of a policy.

    Lifecycle: pending -> remediated (worker) or pending -> ignored (operator).
    At most one pending row may exist per policy; the partial unique index
    below backs the in-process lock held by the violation ledger.
    """

    __tablename__ = "policy_violations"
    __table_args__ = (
        Index(
            "uq_policy_violations_pending_policy",
            "policy_id",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    policy_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("policies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    cloud_provider: Mapped[str] = mapped_column(String(32), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    severity: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ViolationSeverity.HIGH.value
    )
    status: Mapped[ViolationStatus] = mapped_column(
        SQLEnum(
            ViolationStatus,
            name="violation_status",
            native_enum=False,
            length=20,
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        default=ViolationStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    remediated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
