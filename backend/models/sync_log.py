"""
SyncLog model - append-only audit row per HubSpot sync run.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from config import to_iso8601
from models.database import Base


class SyncLog(Base):
    """Summary of one reconciliation run for a region."""

    __tablename__ = "sync_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    region_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("regions.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # 'success', 'partial', 'failed'

    deals_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deals_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deals_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deals_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    duration: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # ms
    trigger_type: Mapped[str] = mapped_column(
        String(20), default="manual", nullable=False
    )  # 'manual', 'scheduled'

    started_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "region_id": str(self.region_id),
            "status": self.status,
            "deals_processed": self.deals_processed,
            "deals_created": self.deals_created,
            "deals_updated": self.deals_updated,
            "deals_failed": self.deals_failed,
            "error_message": self.error_message,
            "duration": self.duration,
            "trigger_type": self.trigger_type,
            "started_at": to_iso8601(self.started_at),
        }
