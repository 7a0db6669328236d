from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from finopsbridge.shared.db.base import Base, new_id, utcnow


class PolicyType(str, Enum):
    MAX_SPEND = "max_spend"
    BLOCK_INSTANCE_TYPE = "block_instance_type"
    AUTO_STOP_IDLE = "auto_stop_idle"
    REQUIRE_TAGS = "require_tags"


class Policy(Base):
    """
    A governance rule owned by an organization.

    Written by the policy CRUD layer; the enforcement worker only reads it.
    `rego` holds the compiled rule text that the rule engine evaluates.
    """

    __tablename__ = "policies"
    __table_args__ = (
        Index("ix_policies_org_enabled", "organization_id", "enabled"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Kept as free text: unknown types are tolerated and treated as notify-only.
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    rego: Mapped[str] = mapped_column(Text, nullable=False, default="")
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
