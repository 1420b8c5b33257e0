"""
Target resolution for a region / pipeline / quarter / optional owner.

Owner fallback is asymmetric:
- Owner given and an owner-scoped target exists        -> that target
- Owner given, none exists, region has no owner targets -> team target
- Owner given, none exists, region uses owner targets   -> not set
- No owner                                               -> team target only

Falling back to the team figure once a region has adopted personal targets
would attribute the whole team's goal to one person.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Optional

from db.repository import Repository
from models.target import Target

logger = logging.getLogger(__name__)

TargetStatus = Literal["owner", "team", "not_set"]


@dataclass(frozen=True)
class TargetResolution:
    status: TargetStatus
    target: Optional[Target] = None

    @property
    def amount(self) -> float:
        return float(self.target.amount) if self.target else 0.0

    @property
    def is_set(self) -> bool:
        return self.target is not None


async def resolve_target(
    repository: Repository,
    region_id: uuid.UUID,
    year: int,
    quarter: int,
    pipeline_id: Optional[uuid.UUID] = None,
    owner_name: Optional[str] = None,
) -> TargetResolution:
    """Resolve the target that applies to one quarter."""
    if owner_name:
        owner_target = await repository.find_target(
            region_id, year, quarter, pipeline_id=pipeline_id, owner_name=owner_name
        )
        if owner_target is not None:
            return TargetResolution(status="owner", target=owner_target)
        if await repository.region_has_owner_targets(region_id):
            logger.debug(
                "Owner has no target in a region using owner targets",
                extra={"region_id": str(region_id), "owner": owner_name},
            )
            return TargetResolution(status="not_set")

    team_target = await repository.find_target(
        region_id, year, quarter, pipeline_id=pipeline_id, owner_name=None
    )
    if team_target is None:
        return TargetResolution(status="not_set")
    return TargetResolution(status="team", target=team_target)


def quarters_in_range(
    start_year: int, start_quarter: int, end_year: int, end_quarter: int
) -> list[tuple[int, int]]:
    """All (year, quarter) pairs from start to end inclusive."""
    quarters: list[tuple[int, int]] = []
    year, quarter = start_year, start_quarter
    while (year, quarter) <= (end_year, end_quarter):
        quarters.append((year, quarter))
        quarter += 1
        if quarter > 4:
            quarter = 1
            year += 1
    return quarters


@dataclass
class TargetRangeSummary:
    target_amount: float = 0.0
    quarters_with_targets: list[dict[str, Any]] = field(default_factory=list)
    quarters_missing_targets: list[dict[str, int]] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.quarters_missing_targets

    def to_dict(self) -> dict[str, Any]:
        return {
            "targetAmount": self.target_amount,
            "quartersWithTargets": self.quarters_with_targets,
            "quartersMissingTargets": self.quarters_missing_targets,
            "isComplete": self.is_complete,
            "coveredQuarters": len(self.quarters_with_targets),
            "totalQuarters": len(self.quarters_with_targets) + len(self.quarters_missing_targets),
        }


async def resolve_target_range(
    repository: Repository,
    region_id: uuid.UUID,
    start_year: int,
    start_quarter: int,
    end_year: int,
    end_quarter: int,
    owner_name: Optional[str] = None,
    pipeline_id: Optional[uuid.UUID] = None,
) -> TargetRangeSummary:
    """Sum resolved targets over a quarter range, noting quarters without one."""
    summary = TargetRangeSummary()
    for year, quarter in quarters_in_range(start_year, start_quarter, end_year, end_quarter):
        resolution = await resolve_target(
            repository, region_id, year, quarter, pipeline_id=pipeline_id, owner_name=owner_name
        )
        if resolution.is_set:
            summary.target_amount += resolution.amount
            summary.quarters_with_targets.append(
                {"year": year, "quarter": quarter, "amount": resolution.amount,
                 "scope": resolution.status}
            )
        else:
            summary.quarters_missing_targets.append({"year": year, "quarter": quarter})
    return summary
