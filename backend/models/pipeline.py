"""
Pipeline model - one HubSpot deal pipeline scoped to a region.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.database import Base

if TYPE_CHECKING:
    from models.deal import Deal


class Pipeline(Base):
    """HubSpot pipeline definition, keyed by (hubspot_pipeline_id, region_id)."""

    __tablename__ = "pipelines"
    __table_args__ = (
        UniqueConstraint(
            "hubspot_pipeline_id", "region_id", name="uq_pipelines_hubspot_region"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    region_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("regions.id"), nullable=False
    )
    hubspot_pipeline_id: Mapped[str] = mapped_column(String(255), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Relationships
    deals: Mapped[list["Deal"]] = relationship("Deal", back_populates="pipeline")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "region_id": str(self.region_id),
            "hubspot_pipeline_id": self.hubspot_pipeline_id,
            "name": self.name,
            "display_order": self.display_order,
            "is_default": self.is_default,
        }
