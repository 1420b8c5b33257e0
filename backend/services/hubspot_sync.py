"""
HubSpot -> local store reconciliation.

One run for one region:
1. Fetch deals (close-date window search, or full scan), owners and
   pipelines concurrently. Owner fetch failure degrades to no owners.
2. Truncate to ``max_deals_per_run``; the rest is reported as
   ``remaining_deals`` and picked up by the caller re-invoking the sync.
3. Upsert pipelines and build the run's resolver.
4. Resolve every needed exchange rate once, before touching deals.
5. Process deals in sequential waves of ``concurrency`` parallel tasks.
   A bad deal is recorded in ``errors`` and never affects its siblings.
6. Reconcile each deal's line items (unless skipped) in one transaction.
7. Write one SyncLog row.

``sync_deals_from_hubspot`` never raises: a failure to reach HubSpot is
reported as a failed result and a 'failed' SyncLog row.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Literal, Optional, Sequence

from config import get_hubspot_api_key, settings
from connectors.hubspot import HubSpotClient
from connectors.resolution import HubSpotResolver, build_resolver
from db.repository import Repository
from services.exchange_rates import ExchangeRateService, get_fallback_rate

logger = logging.getLogger(__name__)

HUBSPOT_DEAL_URL = "https://app.hubspot.com/contacts/deal/{deal_id}"


class DealParseError(ValueError):
    """A HubSpot deal carries a value we cannot store."""


@dataclass
class SyncOptions:
    """Knobs for one sync run."""

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    max_deals_per_run: Optional[int] = None
    skip_line_items: bool = False
    trigger_type: str = "manual"


@dataclass
class SyncResult:
    """Outcome of one sync run for one region."""

    success: bool
    created: int = 0
    updated: int = 0
    errors: list[str] = field(default_factory=list)
    duration: int = 0  # ms
    total_deals: int = 0
    processed_deals: int = 0
    remaining_deals: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "success": self.success,
            "created": self.created,
            "updated": self.updated,
            "errors": self.errors,
            "duration": self.duration,
            "totalDeals": self.total_deals,
            "processedDeals": self.processed_deals,
            "remainingDeals": self.remaining_deals,
        }


@dataclass(frozen=True)
class DealOutcome:
    kind: Literal["created", "updated", "failed"]
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------

def parse_amount(raw: Any) -> float:
    """Parse a HubSpot amount string. Blank means 0."""
    if raw is None or raw == "":
        return 0.0
    try:
        amount = float(raw)
    except (TypeError, ValueError):
        raise DealParseError(f"not a number: {raw}")
    if not math.isfinite(amount):
        raise DealParseError(f"not a number: {raw}")
    return amount


def parse_hubspot_datetime(raw: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string or epoch-milliseconds value to naive UTC.

    Returns None for blank input; raises ValueError for garbage.
    """
    if raw is None or raw == "":
        return None
    text = str(raw).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text) / 1000, tz=timezone.utc).replace(tzinfo=None)
    dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _optional_datetime(raw: Any) -> Optional[datetime]:
    try:
        return parse_hubspot_datetime(raw)
    except ValueError:
        return None


def _waves(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def normalize_line_item(item: dict[str, Any]) -> dict[str, Any]:
    """HubSpot line item -> LineItem column values."""
    props = item.get("properties", {})
    return {
        "hubspot_line_item_id": str(item["id"]),
        "name": props.get("name") or "Unknown Product",
        "description": props.get("description") or None,
        "quantity": float(props.get("quantity") or 1),
        "price": float(props.get("price") or 0),
        "amount": float(props.get("amount") or 0),
        "product_id": props.get("hs_product_id") or None,
    }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class HubSpotSyncEngine:
    """Reconciles one region's HubSpot deals into the repository."""

    def __init__(
        self,
        client: HubSpotClient,
        repository: Repository,
        region_id: uuid.UUID,
        rate_service: Optional[ExchangeRateService] = None,
        concurrency: Optional[int] = None,
    ) -> None:
        self.client = client
        self.repository = repository
        self.region_id = region_id
        self.rate_service = rate_service or ExchangeRateService(repository)
        self.concurrency = max(1, concurrency or settings.SYNC_CONCURRENCY)

    async def run(self, options: Optional[SyncOptions] = None) -> SyncResult:
        options = options or SyncOptions()
        started = time.monotonic()
        max_deals = (
            options.max_deals_per_run
            if options.max_deals_per_run is not None
            else settings.SYNC_MAX_DEALS_PER_RUN
        )
        sync_time = datetime.utcnow()

        try:
            raw_deals, owners, pipelines = await self._fetch(options)

            batch = raw_deals[:max_deals]
            if len(raw_deals) > max_deals:
                logger.info(
                    f"[Sync] Limiting sync to {max_deals} deals "
                    f"({len(raw_deals) - max_deals} remaining); run sync again to continue"
                )

            resolver = await build_resolver(self.repository, self.region_id, owners, pipelines)
            rates = await self._preload_rates(batch)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.exception(
                "HubSpot sync failed",
                extra={"region_id": str(self.region_id), "error": message},
            )
            duration = int((time.monotonic() - started) * 1000)
            await self._write_log(
                status="failed", processed=0, created=0, updated=0, failed=0,
                error_message=message, duration=duration, trigger_type=options.trigger_type,
            )
            return SyncResult(success=False, errors=[f"Sync failed: {message}"], duration=duration)

        created = 0
        updated = 0
        errors: list[str] = []
        for wave in _waves(batch, self.concurrency):
            outcomes = await asyncio.gather(
                *(
                    self._process_deal(raw, resolver, rates, sync_time, options.skip_line_items)
                    for raw in wave
                ),
                return_exceptions=True,
            )
            for raw, outcome in zip(wave, outcomes):
                if isinstance(outcome, BaseException):
                    errors.append(f"Error processing deal {raw.get('id')}: {outcome}")
                elif outcome.kind == "created":
                    created += 1
                elif outcome.kind == "updated":
                    updated += 1
                else:
                    errors.append(outcome.error or f"Error processing deal {raw.get('id')}")

        duration = int((time.monotonic() - started) * 1000)
        result = SyncResult(
            success=not errors,
            created=created,
            updated=updated,
            errors=errors,
            duration=duration,
            total_deals=len(raw_deals),
            processed_deals=len(batch),
            remaining_deals=max(0, len(raw_deals) - len(batch)),
        )
        await self._write_log(
            status="partial" if errors else "success",
            processed=len(batch),
            created=created,
            updated=updated,
            failed=len(errors),
            error_message="\n".join(errors) if errors else None,
            duration=duration,
            trigger_type=options.trigger_type,
        )
        logger.info(
            "HubSpot sync finished",
            extra={
                "region_id": str(self.region_id),
                "created": created,
                "updated": updated,
                "failed": len(errors),
                "remaining": result.remaining_deals,
                "duration_ms": duration,
            },
        )
        return result

    async def _fetch(
        self, options: SyncOptions
    ) -> tuple[list[dict[str, Any]], list[dict[str, Any]], list[dict[str, Any]]]:
        if options.start_date and options.end_date:
            logger.info(
                f"[Sync] Syncing deals with closeDate between "
                f"{options.start_date.isoformat()} and {options.end_date.isoformat()}"
            )
            deals_call = self.client.fetch_deals_with_filters(
                close_date=(options.start_date, options.end_date)
            )
        else:
            logger.info("[Sync] Syncing all deals (no date filter)")
            deals_call = self.client.fetch_deals()

        raw_deals, owners, pipelines = await asyncio.gather(
            deals_call,
            self._fetch_owners(),
            self.client.fetch_pipelines(),
        )
        logger.info(f"[Sync] Found {len(raw_deals)} deals, {len(owners)} owners in HubSpot")
        return raw_deals, owners, pipelines

    async def _fetch_owners(self) -> list[dict[str, Any]]:
        try:
            return await self.client.fetch_owners()
        except Exception as exc:
            logger.warning(f"[Sync] Failed to fetch owners, deals will be Unassigned: {exc}")
            return []

    async def _preload_rates(self, batch: list[dict[str, Any]]) -> dict[str, float]:
        """One rate lookup per distinct non-USD currency in the batch."""
        currencies = sorted({
            (deal.get("properties", {}).get("deal_currency_code") or "USD").upper()
            for deal in batch
        } - {"USD"})
        results = await asyncio.gather(
            *(self.rate_service.get_rate(c, "USD") for c in currencies),
            return_exceptions=True,
        )
        rates: dict[str, float] = {"USD": 1.0}
        for currency, rate in zip(currencies, results):
            if isinstance(rate, Exception):
                logger.warning(f"[Sync] Rate lookup failed for {currency}, using fallback: {rate}")
                rate = get_fallback_rate(currency, "USD")
            rates[currency] = rate
        return rates

    def normalize_deal(
        self,
        raw: dict[str, Any],
        resolver: HubSpotResolver,
        rates: dict[str, float],
        sync_time: datetime,
    ) -> dict[str, Any]:
        """HubSpot deal -> Deal column values. Raises DealParseError."""
        deal_id = str(raw.get("id", ""))
        props: dict[str, Any] = raw.get("properties", {})

        try:
            amount = parse_amount(props.get("amount"))
        except DealParseError:
            raise DealParseError(f"Invalid amount for deal {deal_id}: {props.get('amount')}")

        try:
            close_date = parse_hubspot_datetime(props.get("closedate")) or sync_time
        except ValueError:
            raise DealParseError(f"Invalid close date for deal {deal_id}: {props.get('closedate')}")

        hubspot_pipeline_id = props.get("pipeline")
        stage = resolver.resolve_stage(hubspot_pipeline_id, props.get("dealstage"))
        stage_probability = stage.probability
        probability_source = "hubspot" if stage.resolved else "default"
        deal_probability = props.get("hs_deal_stage_probability")
        if deal_probability not in (None, ""):
            try:
                override = float(deal_probability)
            except (TypeError, ValueError):
                override = math.nan
            if math.isfinite(override):
                stage_probability = override * 100
                probability_source = "hubspot"

        owner_name, owner_email = resolver.resolve_owner(props.get("hubspot_owner_id"))

        currency = (props.get("deal_currency_code") or "USD").upper()
        exchange_rate = rates.get(currency, 1.0)

        return {
            "hubspot_id": deal_id,
            "region_id": self.region_id,
            "pipeline_id": resolver.resolve_pipeline_key(hubspot_pipeline_id),
            "name": props.get("dealname") or "Untitled Deal",
            "amount": amount,
            "currency": currency,
            "amount_usd": amount * exchange_rate,
            "exchange_rate": exchange_rate,
            "stage": stage.label,
            "stage_probability": stage_probability,
            "probability_source": probability_source,
            "forecast_category": props.get("hs_forecast_category") or "Pipeline",
            "close_date": close_date,
            "deploy_time": _optional_datetime(
                props.get("expected_close_date") or props.get("deploy_time")
            ),
            "created_at": _optional_datetime(raw.get("createdAt") or props.get("createdate"))
            or sync_time,
            "last_modified_at": _optional_datetime(
                raw.get("updatedAt") or props.get("hs_lastmodifieddate")
            )
            or sync_time,
            "owner_name": owner_name,
            "owner_email": owner_email,
            "distributor": props.get("distributor") or None,
            "end_user_location": props.get("end_user_location__dr_") or None,
            "hubspot_url": raw.get("url") or HUBSPOT_DEAL_URL.format(deal_id=deal_id),
            "raw_data": props,
        }

    async def _process_deal(
        self,
        raw: dict[str, Any],
        resolver: HubSpotResolver,
        rates: dict[str, float],
        sync_time: datetime,
        skip_line_items: bool,
    ) -> DealOutcome:
        deal_id = str(raw.get("id", ""))
        try:
            values = self.normalize_deal(raw, resolver, rates, sync_time)
            upserted = await self.repository.upsert_deal(values)
        except DealParseError as exc:
            logger.warning(str(exc))
            return DealOutcome(kind="failed", error=str(exc))
        except Exception as exc:
            logger.warning(f"[Sync] Error processing deal {deal_id}: {exc}")
            return DealOutcome(kind="failed", error=f"Error processing deal {deal_id}: {exc}")

        if not skip_line_items:
            await self._sync_line_items(deal_id, upserted.deal_id)
        return DealOutcome(kind=upserted.kind)

    async def _sync_line_items(self, hubspot_deal_id: str, local_deal_id: uuid.UUID) -> None:
        """Set-reconcile a deal's line items. Failures are logged, not raised."""
        try:
            line_item_ids = await self.client.fetch_deal_line_item_associations(hubspot_deal_id)
            line_items = await self.client.fetch_line_items(line_item_ids)
            if line_item_ids and not line_items:
                # Batch read failed; keep what we have rather than wiping the set
                logger.warning(
                    f"[Sync] Line items for deal {hubspot_deal_id} could not be read, skipping"
                )
                return
            await self.repository.reconcile_line_items(
                local_deal_id, [normalize_line_item(item) for item in line_items]
            )
        except Exception as exc:
            logger.warning(f"[Sync] Failed to sync line items for deal {hubspot_deal_id}: {exc}")

    async def _write_log(
        self,
        status: str,
        processed: int,
        created: int,
        updated: int,
        failed: int,
        error_message: Optional[str],
        duration: int,
        trigger_type: str,
    ) -> None:
        try:
            await self.repository.create_sync_log(
                region_id=self.region_id,
                status=status,
                deals_processed=processed,
                deals_created=created,
                deals_updated=updated,
                deals_failed=failed,
                error_message=error_message,
                duration=duration,
                trigger_type=trigger_type,
            )
        except Exception:
            logger.exception("Failed to write sync log", extra={"region_id": str(self.region_id)})


async def sync_deals_from_hubspot(
    api_key: str,
    region_id: uuid.UUID,
    repository: Repository,
    options: Optional[SyncOptions] = None,
    client: Optional[HubSpotClient] = None,
    rate_service: Optional[ExchangeRateService] = None,
) -> SyncResult:
    """Sync one region's deals from HubSpot. Never raises."""
    engine = HubSpotSyncEngine(
        client=client or HubSpotClient(api_key),
        repository=repository,
        region_id=region_id,
        rate_service=rate_service,
    )
    return await engine.run(options)


async def sync_all_regions(
    repository: Repository,
    region_codes: list[str],
    options: Optional[SyncOptions] = None,
) -> dict[str, SyncResult]:
    """Sync each region in turn; a region without a token gets a failed result."""
    results: dict[str, SyncResult] = {}
    for code in region_codes:
        api_key = get_hubspot_api_key(code)
        if not api_key:
            results[code] = SyncResult(
                success=False, errors=[f"No API key found for region {code}"]
            )
            continue

        region = await repository.get_region(code)
        if region is None:
            results[code] = SyncResult(success=False, errors=[f"Region not found: {code}"])
            continue

        results[code] = await sync_deals_from_hubspot(api_key, region.id, repository, options)
    return results
