"""
Deal model - local copy of a HubSpot deal, plus its line items.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import (
    DateTime, Float, ForeignKey, Index, Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config import to_iso8601
from models.database import Base

if TYPE_CHECKING:
    from models.pipeline import Pipeline


class Deal(Base):
    """Deal model, unique per (hubspot_id, region_id)."""

    __tablename__ = "deals"
    __table_args__ = (
        UniqueConstraint("hubspot_id", "region_id", name="uq_deals_hubspot_region"),
        Index("idx_deals_region_close_date", "region_id", "close_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    hubspot_id: Mapped[str] = mapped_column(String(255), nullable=False)
    region_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("regions.id"), nullable=False
    )
    pipeline_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("pipelines.id"), nullable=True
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(18, 2, asdecimal=False), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    amount_usd: Mapped[float] = mapped_column(
        Numeric(18, 2, asdecimal=False), nullable=False
    )
    exchange_rate: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)

    stage: Mapped[str] = mapped_column(String(255), nullable=False)
    stage_probability: Mapped[float] = mapped_column(Float, default=0, nullable=False)  # 0-100
    probability_source: Mapped[str] = mapped_column(
        String(20), default="hubspot", nullable=False
    )  # 'hubspot' or 'default'
    forecast_category: Mapped[str] = mapped_column(
        String(50), default="Pipeline", nullable=False
    )

    close_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    deploy_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Sourced from HubSpot, not local write time
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_modified_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    owner_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    owner_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    distributor: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    end_user_location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    hubspot_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    raw_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)

    synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=True
    )

    # Relationships
    pipeline: Mapped[Optional["Pipeline"]] = relationship(
        "Pipeline", back_populates="deals"
    )
    line_items: Mapped[list["LineItem"]] = relationship(
        "LineItem", back_populates="deal", cascade="all, delete-orphan"
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "hubspot_id": self.hubspot_id,
            "region_id": str(self.region_id),
            "pipeline_id": str(self.pipeline_id) if self.pipeline_id else None,
            "name": self.name,
            "amount": self.amount,
            "currency": self.currency,
            "amount_usd": self.amount_usd,
            "exchange_rate": self.exchange_rate,
            "stage": self.stage,
            "stage_probability": self.stage_probability,
            "probability_source": self.probability_source,
            "forecast_category": self.forecast_category,
            "close_date": to_iso8601(self.close_date),
            "deploy_time": to_iso8601(self.deploy_time),
            "owner_name": self.owner_name,
            "owner_email": self.owner_email,
            "distributor": self.distributor,
            "end_user_location": self.end_user_location,
            "hubspot_url": self.hubspot_url,
        }


class LineItem(Base):
    """Product line on a deal, unique per (deal_id, hubspot_line_item_id)."""

    __tablename__ = "line_items"
    __table_args__ = (
        UniqueConstraint(
            "deal_id", "hubspot_line_item_id", name="uq_line_items_deal_hubspot"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    deal_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("deals.id", ondelete="CASCADE"), nullable=False
    )
    hubspot_line_item_id: Mapped[str] = mapped_column(String(255), nullable=False)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    quantity: Mapped[float] = mapped_column(Float, default=1, nullable=False)
    price: Mapped[float] = mapped_column(Numeric(18, 2, asdecimal=False), default=0, nullable=False)
    amount: Mapped[float] = mapped_column(Numeric(18, 2, asdecimal=False), default=0, nullable=False)
    product_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Relationships
    deal: Mapped["Deal"] = relationship("Deal", back_populates="line_items")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "hubspot_line_item_id": self.hubspot_line_item_id,
            "name": self.name,
            "description": self.description,
            "quantity": self.quantity,
            "price": self.price,
            "amount": self.amount,
            "product_id": self.product_id,
        }
