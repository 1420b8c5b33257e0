"""
ExchangeRate model - append-only daily cache of currency rates.
"""
from __future__ import annotations

import uuid
from datetime import date as date_type, datetime
from typing import Any

from sqlalchemy import Date, DateTime, Float, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base


class ExchangeRate(Base):
    """One cached rate per (from_currency, to_currency, date)."""

    __tablename__ = "exchange_rates"
    __table_args__ = (
        UniqueConstraint(
            "from_currency", "to_currency", "date", name="uq_exchange_rates_pair_date"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    from_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    to_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    date: Mapped[date_type] = mapped_column(Date, nullable=False)
    rate: Mapped[float] = mapped_column(Float, nullable=False)
    source: Mapped[str] = mapped_column(
        String(50), nullable=False
    )  # 'exchangerate-api', 'mock-data'

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "from_currency": self.from_currency,
            "to_currency": self.to_currency,
            "date": self.date.isoformat(),
            "rate": self.rate,
            "source": self.source,
        }
