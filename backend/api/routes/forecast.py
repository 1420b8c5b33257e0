"""
Forecast and target endpoints.

Endpoints:
- GET /api/forecast - Quarter forecast for a region against its target
- GET /api/owner-targets - Summed targets for an owner over a quarter range
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from access_control import Permission, Principal, require_permission, require_region_access
from api.auth_middleware import get_current_principal
from api.dependencies import get_repository
from config import to_iso8601
from db.repository import Repository
from services.forecast import RegionNotFound, get_region_forecast, quarter_date_range
from services.targets import resolve_target_range

router = APIRouter()
logger = logging.getLogger(__name__)

ALL_OWNERS = "All"


def _owner_filter(owner: Optional[str]) -> Optional[str]:
    """The "All" pseudo-owner means no owner filter."""
    if not owner or owner == ALL_OWNERS:
        return None
    return owner


@router.get("/forecast")
async def get_forecast(
    region: str = Query(...),
    year: int = Query(...),
    quarter: int = Query(..., ge=1, le=4),
    pipeline: Optional[UUID] = Query(default=None),
    owner: Optional[str] = Query(default=None),
    principal: Optional[Principal] = Depends(get_current_principal),
    repository: Repository = Depends(get_repository),
) -> dict[str, Any]:
    require_permission(principal, Permission.VIEW_DASHBOARD)
    require_region_access(principal, region)

    result, resolution = await get_region_forecast(
        repository, region, year, quarter, pipeline_id=pipeline, owner_name=_owner_filter(owner)
    )
    start, end = quarter_date_range(year, quarter)
    return {
        "success": True,
        "region": region,
        "period": {
            "year": year,
            "quarter": quarter,
            "startDate": to_iso8601(start),
            "endDate": to_iso8601(end),
        },
        "forecast": result.to_dict(),
        "targetStatus": resolution.status,
    }


@router.get("/owner-targets")
async def get_owner_targets(
    region: str = Query(...),
    owner: Optional[str] = Query(default=None),
    start_year: Optional[int] = Query(default=None, alias="startYear"),
    start_quarter: int = Query(default=1, alias="startQuarter", ge=1, le=4),
    end_year: Optional[int] = Query(default=None, alias="endYear"),
    end_quarter: int = Query(default=4, alias="endQuarter", ge=1, le=4),
    principal: Optional[Principal] = Depends(get_current_principal),
    repository: Repository = Depends(get_repository),
) -> dict[str, Any]:
    require_permission(principal, Permission.VIEW_TARGETS)
    require_region_access(principal, region)

    region_row = await repository.get_region(region)
    if region_row is None:
        raise RegionNotFound(f"No region found with code: {region}")

    current_year = datetime.utcnow().year
    summary = await resolve_target_range(
        repository,
        region_row.id,
        start_year or current_year,
        start_quarter,
        end_year or current_year,
        end_quarter,
        owner_name=_owner_filter(owner),
    )
    return {
        "success": True,
        "owner": owner or ALL_OWNERS,
        "region": region,
        **summary.to_dict(),
    }
