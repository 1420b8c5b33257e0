"""In-memory stand-ins for the repository, HubSpot client and rate service."""
from __future__ import annotations

import asyncio
import uuid
from datetime import date, datetime
from typing import Any, Optional

from db.repository import Repository, UpsertResult
from models.deal import Deal
from models.region import Region
from models.sync_log import SyncLog
from models.target import Target


class InMemoryRepository(Repository):
    """Dict-backed Repository honouring the same natural keys as the SQL tables."""

    def __init__(self) -> None:
        self.regions: dict[str, Region] = {}
        self.pipelines: dict[tuple[str, uuid.UUID], dict[str, Any]] = {}
        self.deals: dict[tuple[str, uuid.UUID], Deal] = {}
        self.line_items: dict[uuid.UUID, dict[str, dict[str, Any]]] = {}
        self.sync_logs: list[SyncLog] = []
        self.rates: dict[tuple[str, str, date], tuple[float, str]] = {}
        self.targets: list[Target] = []
        self.fail_upsert_for: set[str] = set()
        self.in_flight = 0
        self.max_in_flight = 0

    # -- seeding ---------------------------------------------------------

    def add_region(self, code: str, name: Optional[str] = None, currency: str = "USD") -> Region:
        region = Region(
            id=uuid.uuid4(),
            code=code,
            name=name or code,
            currency=currency,
            timezone="UTC",
            is_active=True,
            created_at=datetime.utcnow(),
        )
        self.regions[code] = region
        return region

    def add_target(
        self,
        region_id: uuid.UUID,
        year: int,
        quarter: int,
        amount: float,
        owner_name: Optional[str] = None,
        pipeline_id: Optional[uuid.UUID] = None,
    ) -> Target:
        target = Target(
            id=uuid.uuid4(),
            region_id=region_id,
            pipeline_id=pipeline_id,
            year=year,
            quarter=quarter,
            owner_name=owner_name,
            amount=amount,
            currency="USD",
            created_at=datetime.utcnow(),
            updated_at=datetime.utcnow(),
        )
        self.targets.append(target)
        return target

    def add_deal(self, region_id: uuid.UUID, hubspot_id: str, **overrides: Any) -> Deal:
        now = datetime.utcnow()
        values: dict[str, Any] = {
            "hubspot_id": hubspot_id,
            "region_id": region_id,
            "pipeline_id": None,
            "name": f"Deal {hubspot_id}",
            "amount": 1000.0,
            "currency": "USD",
            "amount_usd": 1000.0,
            "exchange_rate": 1.0,
            "stage": "Qualified",
            "stage_probability": 50.0,
            "probability_source": "hubspot",
            "forecast_category": "Pipeline",
            "close_date": now,
            "created_at": now,
            "last_modified_at": now,
            "owner_name": "Unassigned",
        }
        values.update(overrides)
        deal = Deal(id=uuid.uuid4(), synced_at=now, **values)
        self.deals[(hubspot_id, region_id)] = deal
        return deal

    def line_item_ids(self, deal: Deal) -> set[str]:
        return set(self.line_items.get(deal.id, {}))

    # -- Repository ------------------------------------------------------

    async def get_region(self, code: str) -> Optional[Region]:
        return self.regions.get(code)

    async def ensure_region(
        self, code: str, name: str, currency: str = "USD", timezone: str = "UTC"
    ) -> Region:
        region = self.regions.get(code)
        if region is None:
            region = self.add_region(code, name, currency)
        region.name = name
        region.currency = currency
        region.timezone = timezone
        return region

    async def upsert_pipeline(
        self,
        region_id: uuid.UUID,
        hubspot_pipeline_id: str,
        name: str,
        display_order: int,
        is_default: bool,
    ) -> uuid.UUID:
        key = (hubspot_pipeline_id, region_id)
        existing = self.pipelines.get(key)
        pipeline_id = existing["id"] if existing else uuid.uuid4()
        self.pipelines[key] = {
            "id": pipeline_id,
            "name": name,
            "display_order": display_order,
            "is_default": is_default,
        }
        return pipeline_id

    async def upsert_deal(self, values: dict[str, Any]) -> UpsertResult:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            if values["hubspot_id"] in self.fail_upsert_for:
                raise RuntimeError("database unavailable")

            key = (values["hubspot_id"], values["region_id"])
            existing = self.deals.get(key)
            if existing is not None:
                for column, value in values.items():
                    setattr(existing, column, value)
                existing.synced_at = datetime.utcnow()
                return UpsertResult(kind="updated", deal_id=existing.id)

            deal = Deal(id=uuid.uuid4(), synced_at=datetime.utcnow(), **values)
            self.deals[key] = deal
            return UpsertResult(kind="created", deal_id=deal.id)
        finally:
            self.in_flight -= 1

    async def reconcile_line_items(
        self, deal_id: uuid.UUID, items: list[dict[str, Any]]
    ) -> None:
        self.line_items[deal_id] = {item["hubspot_line_item_id"]: dict(item) for item in items}

    async def create_sync_log(self, **fields: Any) -> None:
        self.sync_logs.append(SyncLog(id=uuid.uuid4(), started_at=datetime.utcnow(), **fields))

    async def get_cached_rate(
        self, from_currency: str, to_currency: str, since: date
    ) -> Optional[float]:
        for (from_c, to_c, rate_date), (rate, _source) in self.rates.items():
            if from_c == from_currency and to_c == to_currency and rate_date >= since:
                return rate
        return None

    async def save_rate(
        self,
        from_currency: str,
        to_currency: str,
        rate_date: date,
        rate: float,
        source: str,
    ) -> None:
        self.rates.setdefault((from_currency, to_currency, rate_date), (rate, source))

    async def list_sync_logs(
        self, limit: int = 10, region_id: Optional[uuid.UUID] = None
    ) -> list[SyncLog]:
        logs = [log for log in self.sync_logs if region_id is None or log.region_id == region_id]
        return list(reversed(logs))[:limit]

    async def last_successful_sync(
        self, region_id: Optional[uuid.UUID] = None
    ) -> Optional[SyncLog]:
        for log in await self.list_sync_logs(limit=len(self.sync_logs), region_id=region_id):
            if log.status == "success":
                return log
        return None

    async def list_deals(
        self,
        region_id: uuid.UUID,
        start: datetime,
        end: datetime,
        pipeline_id: Optional[uuid.UUID] = None,
        owner_name: Optional[str] = None,
    ) -> list[Deal]:
        return [
            deal
            for deal in self.deals.values()
            if deal.region_id == region_id
            and start <= deal.close_date <= end
            and (pipeline_id is None or deal.pipeline_id == pipeline_id)
            and (owner_name is None or deal.owner_name == owner_name)
        ]

    async def find_target(
        self,
        region_id: uuid.UUID,
        year: int,
        quarter: int,
        pipeline_id: Optional[uuid.UUID] = None,
        owner_name: Optional[str] = None,
    ) -> Optional[Target]:
        for target in self.targets:
            if (
                target.region_id == region_id
                and target.year == year
                and target.quarter == quarter
                and target.pipeline_id == pipeline_id
                and target.owner_name == owner_name
            ):
                return target
        return None

    async def region_has_owner_targets(self, region_id: uuid.UUID) -> bool:
        return any(t.region_id == region_id and t.owner_name for t in self.targets)


class FakeHubSpotClient:
    """Serves canned HubSpot payloads and records what the engine asked for."""

    def __init__(
        self,
        deals: Optional[list[dict[str, Any]]] = None,
        owners: Optional[list[dict[str, Any]]] = None,
        pipelines: Optional[list[dict[str, Any]]] = None,
        associations: Optional[dict[str, list[str]]] = None,
        line_items: Optional[dict[str, dict[str, Any]]] = None,
    ) -> None:
        self.deals = deals or []
        self.owners = owners or []
        self.pipelines = pipelines or []
        self.associations = associations or {}
        self.line_items = line_items or {}
        self.deals_error: Optional[Exception] = None
        self.owners_error: Optional[Exception] = None
        self.line_items_unavailable = False
        self.calls: list[tuple[str, Any]] = []

    async def fetch_deals(self, **kwargs: Any) -> list[dict[str, Any]]:
        self.calls.append(("fetch_deals", kwargs))
        if self.deals_error:
            raise self.deals_error
        return list(self.deals)

    async def fetch_deals_with_filters(
        self, close_date: Any = None, deal_stages: Any = None, owner_id: Any = None
    ) -> list[dict[str, Any]]:
        self.calls.append(("fetch_deals_with_filters", close_date))
        if self.deals_error:
            raise self.deals_error
        return list(self.deals)

    async def fetch_owners(self) -> list[dict[str, Any]]:
        if self.owners_error:
            raise self.owners_error
        return list(self.owners)

    async def fetch_pipelines(self) -> list[dict[str, Any]]:
        return list(self.pipelines)

    async def fetch_deal_line_item_associations(self, deal_id: str) -> list[str]:
        return list(self.associations.get(deal_id, []))

    async def fetch_line_items(self, line_item_ids: list[str]) -> list[dict[str, Any]]:
        if self.line_items_unavailable:
            return []
        return [self.line_items[i] for i in line_item_ids if i in self.line_items]


class FakeRateService:
    """Fixed rates; counts lookups per currency."""

    def __init__(self, rates: Optional[dict[str, float]] = None) -> None:
        self.rates = rates or {}
        self.calls: list[str] = []

    async def get_rate(self, from_currency: str, to_currency: str = "USD") -> float:
        self.calls.append(from_currency)
        if from_currency == to_currency:
            return 1.0
        return self.rates.get(from_currency, 1.0)


PIPELINES: list[dict[str, Any]] = [
    {
        "id": "default",
        "label": "Sales Pipeline",
        "displayOrder": 0,
        "stages": [
            {"id": "qualified", "label": "Qualified", "metadata": {"probability": "0.2"}},
            {"id": "negotiation", "label": "Negotiation", "metadata": {"probability": "0.6"}},
            {"id": "closedwon", "label": "Closed Won", "metadata": {"probability": "1.0"}},
            {"id": "closedlost", "label": "Closed Lost", "metadata": {"probability": "0.0"}},
        ],
    },
]

OWNERS: list[dict[str, Any]] = [
    {"id": "101", "firstName": "Aiko", "lastName": "Tanaka", "email": "aiko@example.com"},
    {"id": "102", "firstName": "", "lastName": "", "email": "ops@example.com"},
]


def hubspot_deal(deal_id: str, **props: Any) -> dict[str, Any]:
    """A HubSpot deal payload with sensible defaults."""
    properties: dict[str, Any] = {
        "dealname": f"Deal {deal_id}",
        "amount": "1000",
        "deal_currency_code": "USD",
        "dealstage": "qualified",
        "pipeline": "default",
        "closedate": "2024-02-15T00:00:00Z",
        "createdate": "2024-01-10T09:30:00Z",
        "hs_lastmodifieddate": "2024-02-01T12:00:00Z",
        "hubspot_owner_id": "101",
    }
    properties.update(props)
    return {"id": deal_id, "properties": properties}


def hubspot_line_item(item_id: str, amount: str = "100") -> dict[str, Any]:
    return {
        "id": item_id,
        "properties": {"name": f"Item {item_id}", "quantity": "1", "price": amount, "amount": amount},
    }
