"""
Target model - quarterly revenue goals set by admins and managers.

Never written by the HubSpot sync.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base


class Target(Base):
    """Revenue target for a region/pipeline/quarter, optionally per owner.

    owner_name NULL is the team-level target. pipeline_id NULL is an
    unscoped (legacy) target.
    """

    __tablename__ = "targets"
    __table_args__ = (
        Index("idx_targets_region_period", "region_id", "year", "quarter"),
        Index(
            "uq_targets_scope",
            "region_id",
            "pipeline_id",
            "year",
            "quarter",
            "owner_name",
            unique=True,
            postgresql_nulls_not_distinct=True,
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    region_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("regions.id"), nullable=False
    )
    pipeline_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pipelines.id"), nullable=True
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    quarter: Mapped[int] = mapped_column(Integer, nullable=False)  # 1-4
    owner_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    amount: Mapped[float] = mapped_column(Numeric(18, 2, asdecimal=False), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "region_id": str(self.region_id),
            "pipeline_id": str(self.pipeline_id) if self.pipeline_id else None,
            "year": self.year,
            "quarter": self.quarter,
            "owner_name": self.owner_name,
            "amount": self.amount,
            "currency": self.currency,
        }
