from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Float, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from finopsbridge.shared.db.base import Base, new_id, utcnow


class ProviderKind(str, Enum):
    AWS = "aws"
    AZURE = "azure"
    GCP = "gcp"


class AccountStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class CloudAccount(Base):
    """
    A connected cloud account (AWS account, Azure subscription, GCP project).

    The enforcement worker refreshes `monthly_spend` every tick; every other
    column is owned by the connection CRUD layer.
    """

    __tablename__ = "cloud_providers"
    __table_args__ = (
        Index("ix_cloud_providers_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    project_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    tenancy_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    region: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AccountStatus.DISCONNECTED.value
    )
    # JSON document, decoded by finopsbridge.shared.core.credentials
    credentials: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    monthly_spend: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    connected_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
