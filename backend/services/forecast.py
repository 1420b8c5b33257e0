"""
Quarterly revenue forecast over synced deals.

``compute_forecast`` is pure: it takes the deals of a period and a target
amount and returns numbers. ``get_region_forecast`` loads those inputs
from the repository.
"""

from __future__ import annotations

import calendar
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional, Protocol

from db.repository import Repository
from services.targets import TargetResolution, resolve_target

logger = logging.getLogger(__name__)

LOST_STAGES: frozenset[str] = frozenset({"closed lost", "closedlost"})


class ForecastDeal(Protocol):
    """What the aggregator reads from a deal (a Deal row satisfies it)."""

    amount_usd: float
    stage_probability: float
    stage: str
    close_date: datetime


class RegionNotFound(LookupError):
    """No region with the requested code."""


def is_lost_stage(stage: Optional[str]) -> bool:
    return (stage or "").strip().lower() in LOST_STAGES


def quarter_date_range(year: int, quarter: int) -> tuple[datetime, datetime]:
    """First and last instant of a calendar quarter."""
    if quarter < 1 or quarter > 4:
        raise ValueError("quarter must be between 1 and 4")
    first_month = (quarter - 1) * 3 + 1
    last_month = first_month + 2
    last_day = calendar.monthrange(year, last_month)[1]
    return (
        datetime(year, first_month, 1),
        datetime(year, last_month, last_day, 23, 59, 59, 999999),
    )


def _share(part: float, total: float) -> float:
    return part / total * 100 if total else 0.0


@dataclass
class ForecastGroup:
    """Simple/weighted sums for one stage or month."""

    key: str
    count: int = 0
    simple: float = 0.0
    weighted: float = 0.0
    percentage: float = 0.0
    month_number: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "count": self.count,
            "simple": self.simple,
            "weighted": self.weighted,
            "percentage": self.percentage,
        }
        if self.month_number is None:
            data["stage"] = self.key
        else:
            data["month"] = self.key
            data["monthNumber"] = self.month_number
        return data


@dataclass
class ForecastResult:
    simple: float
    weighted: float
    target: float
    gap: float
    achievement_rate: float
    pipeline_coverage: float
    deal_count: int
    by_stage: list[ForecastGroup] = field(default_factory=list)
    by_month: list[ForecastGroup] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "simple": self.simple,
            "weighted": self.weighted,
            "target": self.target,
            "gap": self.gap,
            "achievementRate": self.achievement_rate,
            "pipelineCoverage": self.pipeline_coverage,
            "dealCount": self.deal_count,
            "byStage": [group.to_dict() for group in self.by_stage],
            "byMonth": [group.to_dict() for group in self.by_month],
        }


def compute_forecast(
    deals: Iterable[ForecastDeal],
    target: float,
    quarter_months: Optional[list[int]] = None,
) -> ForecastResult:
    """
    Aggregate a period's deals.

    Lost deals are excluded. ``quarter_months`` (1-12) fixes the month
    breakdown rows, so empty months still appear; without it only months
    that have deals are listed.
    """
    open_deals = [deal for deal in deals if not is_lost_stage(deal.stage)]

    stages: dict[str, ForecastGroup] = {}
    months: dict[int, ForecastGroup] = {
        month: ForecastGroup(key=calendar.month_abbr[month], month_number=month)
        for month in quarter_months or []
    }
    simple_total = 0.0
    weighted_total = 0.0

    for deal in open_deals:
        amount = float(deal.amount_usd or 0)
        weighted = amount * (float(deal.stage_probability or 0) / 100)
        simple_total += amount
        weighted_total += weighted

        stage_group = stages.setdefault(deal.stage, ForecastGroup(key=deal.stage))
        month = deal.close_date.month
        month_group = months.get(month)
        if month_group is None and not quarter_months:
            month_group = months.setdefault(
                month, ForecastGroup(key=calendar.month_abbr[month], month_number=month)
            )
        for group in (stage_group, month_group):
            if group is None:
                continue
            group.count += 1
            group.simple += amount
            group.weighted += weighted

    for group in [*stages.values(), *months.values()]:
        group.percentage = _share(group.weighted, weighted_total)

    return ForecastResult(
        simple=simple_total,
        weighted=weighted_total,
        target=target,
        gap=weighted_total - target,
        achievement_rate=weighted_total / target * 100 if target > 0 else 0.0,
        pipeline_coverage=simple_total / target * 100 if target > 0 else 0.0,
        deal_count=len(open_deals),
        by_stage=list(stages.values()),
        by_month=[months[month] for month in sorted(months)],
    )


async def get_region_forecast(
    repository: Repository,
    region_code: str,
    year: int,
    quarter: int,
    pipeline_id: Optional[uuid.UUID] = None,
    owner_name: Optional[str] = None,
) -> tuple[ForecastResult, TargetResolution]:
    """Load a region's quarter and compute its forecast against its target."""
    start, end = quarter_date_range(year, quarter)
    region = await repository.get_region(region_code)
    if region is None:
        raise RegionNotFound(f"No region found with code: {region_code}")

    deals = await repository.list_deals(
        region.id, start, end, pipeline_id=pipeline_id, owner_name=owner_name
    )
    resolution = await resolve_target(
        repository, region.id, year, quarter, pipeline_id=pipeline_id, owner_name=owner_name
    )
    first_month = (quarter - 1) * 3 + 1
    result = compute_forecast(
        deals,
        resolution.amount,
        quarter_months=[first_month, first_month + 1, first_month + 2],
    )
    logger.info(
        "Computed forecast",
        extra={
            "region": region_code,
            "year": year,
            "quarter": quarter,
            "deal_count": result.deal_count,
            "target_status": resolution.status,
        },
    )
    return result, resolution
