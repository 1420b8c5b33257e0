"""
Storage seam for the sync engine, forecast service and target resolution.

``Repository`` is the abstract interface; ``SqlRepository`` implements it on
PostgreSQL with ``INSERT ... ON CONFLICT`` upserts keyed by the natural keys
of each table, so re-running a sync converges instead of duplicating rows.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Literal, Optional

from sqlalchemy import delete, literal_column, select
from sqlalchemy.dialects.postgresql import insert as pg_insert

from models.database import get_session
from models.deal import Deal, LineItem
from models.exchange_rate import ExchangeRate
from models.pipeline import Pipeline
from models.region import Region
from models.sync_log import SyncLog
from models.target import Target

logger = logging.getLogger(__name__)

# Columns refreshed on every deal upsert (everything except the keys and id)
DEAL_UPDATE_COLUMNS: tuple[str, ...] = (
    "pipeline_id", "name", "amount", "currency", "amount_usd", "exchange_rate",
    "stage", "stage_probability", "probability_source", "forecast_category",
    "close_date", "deploy_time", "created_at", "last_modified_at",
    "owner_name", "owner_email", "distributor", "end_user_location",
    "hubspot_url", "raw_data", "synced_at",
)

LINE_ITEM_UPDATE_COLUMNS: tuple[str, ...] = (
    "name", "description", "quantity", "price", "amount", "product_id",
)


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of a keyed upsert: whether the row was inserted or updated."""

    kind: Literal["created", "updated"]
    deal_id: uuid.UUID


class Repository(ABC):
    """Persistence operations used by the core services."""

    # -- regions ---------------------------------------------------------

    @abstractmethod
    async def get_region(self, code: str) -> Optional[Region]:
        """Return the region row for a region code, if any."""

    @abstractmethod
    async def ensure_region(
        self, code: str, name: str, currency: str = "USD", timezone: str = "UTC"
    ) -> Region:
        """Create the region row if missing and return it."""

    # -- sync writes -----------------------------------------------------

    @abstractmethod
    async def upsert_pipeline(
        self,
        region_id: uuid.UUID,
        hubspot_pipeline_id: str,
        name: str,
        display_order: int,
        is_default: bool,
    ) -> uuid.UUID:
        """Upsert one pipeline keyed by (hubspot_pipeline_id, region_id)."""

    @abstractmethod
    async def upsert_deal(self, values: dict[str, Any]) -> UpsertResult:
        """Upsert one deal keyed by (hubspot_id, region_id)."""

    @abstractmethod
    async def reconcile_line_items(
        self, deal_id: uuid.UUID, items: list[dict[str, Any]]
    ) -> None:
        """Make the deal's line items exactly ``items``, atomically."""

    @abstractmethod
    async def create_sync_log(self, **fields: Any) -> None:
        """Append one SyncLog row."""

    # -- exchange rate cache ---------------------------------------------

    @abstractmethod
    async def get_cached_rate(
        self, from_currency: str, to_currency: str, since: date
    ) -> Optional[float]:
        """Return the newest cached rate dated on or after ``since``."""

    @abstractmethod
    async def save_rate(
        self,
        from_currency: str,
        to_currency: str,
        rate_date: date,
        rate: float,
        source: str,
    ) -> None:
        """Insert a cached rate; a duplicate for the same day is ignored."""

    # -- reads -----------------------------------------------------------

    @abstractmethod
    async def list_sync_logs(
        self, limit: int = 10, region_id: Optional[uuid.UUID] = None
    ) -> list[SyncLog]:
        """Most recent sync logs first."""

    @abstractmethod
    async def last_successful_sync(
        self, region_id: Optional[uuid.UUID] = None
    ) -> Optional[SyncLog]:
        """Most recent sync log with status 'success'."""

    @abstractmethod
    async def list_deals(
        self,
        region_id: uuid.UUID,
        start: datetime,
        end: datetime,
        pipeline_id: Optional[uuid.UUID] = None,
        owner_name: Optional[str] = None,
    ) -> list[Deal]:
        """Deals of a region whose close date falls in [start, end]."""

    @abstractmethod
    async def find_target(
        self,
        region_id: uuid.UUID,
        year: int,
        quarter: int,
        pipeline_id: Optional[uuid.UUID] = None,
        owner_name: Optional[str] = None,
    ) -> Optional[Target]:
        """Exact-scope target lookup (None values match NULL columns)."""

    @abstractmethod
    async def region_has_owner_targets(self, region_id: uuid.UUID) -> bool:
        """Whether any owner-specific target exists in the region."""


class SqlRepository(Repository):
    """PostgreSQL-backed repository. Each call uses its own pooled session."""

    async def get_region(self, code: str) -> Optional[Region]:
        async with get_session() as session:
            result = await session.execute(select(Region).where(Region.code == code))
            return result.scalar_one_or_none()

    async def ensure_region(
        self, code: str, name: str, currency: str = "USD", timezone: str = "UTC"
    ) -> Region:
        async with get_session() as session:
            stmt = pg_insert(Region).values(
                id=uuid.uuid4(), code=code, name=name, currency=currency,
                timezone=timezone, is_active=True, created_at=datetime.utcnow(),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["code"],
                set_={"name": stmt.excluded.name, "currency": stmt.excluded.currency,
                      "timezone": stmt.excluded.timezone},
            ).returning(Region)
            result = await session.execute(stmt)
            region = result.scalar_one()
            await session.commit()
            return region

    async def upsert_pipeline(
        self,
        region_id: uuid.UUID,
        hubspot_pipeline_id: str,
        name: str,
        display_order: int,
        is_default: bool,
    ) -> uuid.UUID:
        async with get_session() as session:
            stmt = pg_insert(Pipeline).values(
                id=uuid.uuid4(),
                region_id=region_id,
                hubspot_pipeline_id=hubspot_pipeline_id,
                name=name,
                display_order=display_order,
                is_default=is_default,
                synced_at=datetime.utcnow(),
            )
            stmt = stmt.on_conflict_do_update(
                constraint="uq_pipelines_hubspot_region",
                set_={
                    "name": stmt.excluded.name,
                    "display_order": stmt.excluded.display_order,
                    "is_default": stmt.excluded.is_default,
                    "synced_at": stmt.excluded.synced_at,
                },
            ).returning(Pipeline.id)
            result = await session.execute(stmt)
            pipeline_id: uuid.UUID = result.scalar_one()
            await session.commit()
            return pipeline_id

    async def upsert_deal(self, values: dict[str, Any]) -> UpsertResult:
        row = {"id": uuid.uuid4(), "synced_at": datetime.utcnow(), **values}
        async with get_session() as session:
            stmt = pg_insert(Deal).values(row)
            stmt = stmt.on_conflict_do_update(
                constraint="uq_deals_hubspot_region",
                set_={col: stmt.excluded[col] for col in DEAL_UPDATE_COLUMNS},
            ).returning(
                Deal.id,
                # xmax is 0 only for a freshly inserted tuple
                literal_column("(xmax = 0)").label("inserted"),
            )
            result = await session.execute(stmt)
            deal_id, inserted = result.one()
            await session.commit()
        return UpsertResult(kind="created" if inserted else "updated", deal_id=deal_id)

    async def reconcile_line_items(
        self, deal_id: uuid.UUID, items: list[dict[str, Any]]
    ) -> None:
        keep_ids: list[str] = [item["hubspot_line_item_id"] for item in items]
        async with get_session() as session:
            async with session.begin():
                delete_stmt = delete(LineItem).where(LineItem.deal_id == deal_id)
                if keep_ids:
                    delete_stmt = delete_stmt.where(
                        LineItem.hubspot_line_item_id.not_in(keep_ids)
                    )
                await session.execute(delete_stmt)

                if items:
                    rows = [{"id": uuid.uuid4(), "deal_id": deal_id, **item} for item in items]
                    stmt = pg_insert(LineItem).values(rows)
                    stmt = stmt.on_conflict_do_update(
                        constraint="uq_line_items_deal_hubspot",
                        set_={col: stmt.excluded[col] for col in LINE_ITEM_UPDATE_COLUMNS},
                    )
                    await session.execute(stmt)

    async def create_sync_log(self, **fields: Any) -> None:
        async with get_session() as session:
            session.add(SyncLog(id=uuid.uuid4(), started_at=datetime.utcnow(), **fields))
            await session.commit()

    async def get_cached_rate(
        self, from_currency: str, to_currency: str, since: date
    ) -> Optional[float]:
        async with get_session() as session:
            result = await session.execute(
                select(ExchangeRate.rate)
                .where(
                    ExchangeRate.from_currency == from_currency,
                    ExchangeRate.to_currency == to_currency,
                    ExchangeRate.date >= since,
                )
                .order_by(ExchangeRate.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def save_rate(
        self,
        from_currency: str,
        to_currency: str,
        rate_date: date,
        rate: float,
        source: str,
    ) -> None:
        async with get_session() as session:
            stmt = pg_insert(ExchangeRate).values(
                id=uuid.uuid4(),
                from_currency=from_currency,
                to_currency=to_currency,
                date=rate_date,
                rate=rate,
                source=source,
                created_at=datetime.utcnow(),
            ).on_conflict_do_nothing(constraint="uq_exchange_rates_pair_date")
            await session.execute(stmt)
            await session.commit()

    async def list_sync_logs(
        self, limit: int = 10, region_id: Optional[uuid.UUID] = None
    ) -> list[SyncLog]:
        query = select(SyncLog).order_by(SyncLog.started_at.desc()).limit(limit)
        if region_id:
            query = query.where(SyncLog.region_id == region_id)
        async with get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def last_successful_sync(
        self, region_id: Optional[uuid.UUID] = None
    ) -> Optional[SyncLog]:
        query = (
            select(SyncLog)
            .where(SyncLog.status == "success")
            .order_by(SyncLog.started_at.desc())
            .limit(1)
        )
        if region_id:
            query = query.where(SyncLog.region_id == region_id)
        async with get_session() as session:
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def list_deals(
        self,
        region_id: uuid.UUID,
        start: datetime,
        end: datetime,
        pipeline_id: Optional[uuid.UUID] = None,
        owner_name: Optional[str] = None,
    ) -> list[Deal]:
        query = select(Deal).where(
            Deal.region_id == region_id,
            Deal.close_date >= start,
            Deal.close_date <= end,
        )
        if pipeline_id:
            query = query.where(Deal.pipeline_id == pipeline_id)
        if owner_name:
            query = query.where(Deal.owner_name == owner_name)
        async with get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def find_target(
        self,
        region_id: uuid.UUID,
        year: int,
        quarter: int,
        pipeline_id: Optional[uuid.UUID] = None,
        owner_name: Optional[str] = None,
    ) -> Optional[Target]:
        query = select(Target).where(
            Target.region_id == region_id,
            Target.year == year,
            Target.quarter == quarter,
            Target.pipeline_id == pipeline_id if pipeline_id else Target.pipeline_id.is_(None),
            Target.owner_name == owner_name if owner_name else Target.owner_name.is_(None),
        )
        async with get_session() as session:
            result = await session.execute(query)
            return result.scalar_one_or_none()

    async def region_has_owner_targets(self, region_id: uuid.UUID) -> bool:
        async with get_session() as session:
            result = await session.execute(
                select(Target.id)
                .where(Target.region_id == region_id, Target.owner_name.is_not(None))
                .limit(1)
            )
            return result.first() is not None
