"""
HubSpot sync endpoints.

Endpoints:
- POST /api/hubspot/sync - Trigger a sync for one region (default region if omitted)
- GET /api/hubspot/sync - Recent sync logs and the last successful one
- GET /api/hubspot/test - Verify the region's HubSpot token and scopes
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from access_control import Permission, Principal, require_permission, require_region_access
from api.auth_middleware import get_current_principal
from api.dependencies import get_repository
from config import get_hubspot_api_key, settings
from connectors.hubspot import create_hubspot_client
from db.repository import Repository
from services.hubspot_sync import SyncOptions, SyncResult, sync_deals_from_hubspot

router = APIRouter()
logger = logging.getLogger(__name__)


class SyncRequest(BaseModel):
    """Body of a manual sync request. All fields optional."""

    model_config = ConfigDict(populate_by_name=True)

    region_code: Optional[str] = Field(default=None, alias="regionCode")
    force: bool = False
    start_date: Optional[datetime] = Field(default=None, alias="startDate")
    end_date: Optional[datetime] = Field(default=None, alias="endDate")
    max_deals: Optional[int] = Field(default=None, alias="maxDeals", ge=1)
    skip_line_items: bool = Field(default=False, alias="skipLineItems")


def _current_year_window(now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    now = now or datetime.utcnow()
    return datetime(now.year, 1, 1), datetime(now.year, 12, 31, 23, 59, 59)


def _summarize(results: dict[str, SyncResult]) -> dict[str, Any]:
    all_successful = all(r.success for r in results.values())
    return {
        "success": all_successful,
        "results": {code: r.to_dict() for code, r in results.items()},
        "summary": {
            "regions": len(results),
            "created": sum(r.created for r in results.values()),
            "updated": sum(r.updated for r in results.values()),
            "errors": sum(len(r.errors) for r in results.values()),
            "remaining": sum(r.remaining_deals for r in results.values()),
        },
        "message": "Sync completed successfully" if all_successful else "Sync completed with errors",
    }


@router.post("/sync")
async def trigger_sync(
    request: Optional[SyncRequest] = None,
    principal: Optional[Principal] = Depends(get_current_principal),
    repository: Repository = Depends(get_repository),
) -> JSONResponse:
    """Run a sync for one region and report per-region results."""
    request = request or SyncRequest()
    require_permission(principal, Permission.TRIGGER_SYNC)
    region_code = request.region_code or settings.DEFAULT_REGION_CODE
    require_region_access(principal, region_code)

    if not settings.ENABLE_REAL_HUBSPOT_SYNC and not request.force:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "Real HubSpot sync is disabled",
                "message": "Set ENABLE_REAL_HUBSPOT_SYNC=true to enable real data sync",
            },
        )

    region = await repository.get_region(region_code)
    if region is None:
        raise HTTPException(status_code=404, detail=f"No region found with code: {region_code}")

    api_key = get_hubspot_api_key(region_code)
    if not api_key:
        raise HTTPException(
            status_code=400,
            detail=f"No HubSpot API key configured for region {region_code}",
        )

    default_start, default_end = _current_year_window()
    options = SyncOptions(
        start_date=request.start_date or default_start,
        end_date=request.end_date or default_end,
        max_deals_per_run=request.max_deals,
        skip_line_items=request.skip_line_items,
        trigger_type="manual",
    )
    logger.info(
        "Manual HubSpot sync requested",
        extra={"region": region_code, "user_id": principal.user_id if principal else None},
    )
    result = await sync_deals_from_hubspot(api_key, region.id, repository, options)
    return JSONResponse(content=_summarize({region_code: result}))


@router.get("/sync")
async def get_sync_status(
    principal: Optional[Principal] = Depends(get_current_principal),
    repository: Repository = Depends(get_repository),
) -> dict[str, Any]:
    """Last 10 sync logs plus the most recent successful one."""
    require_permission(principal, Permission.VIEW_SYNC_LOGS)
    logs = await repository.list_sync_logs(limit=10)
    last_success = await repository.last_successful_sync()
    return {
        "success": True,
        "lastSync": logs[0].to_dict() if logs else None,
        "lastSuccessfulSync": last_success.to_dict() if last_success else None,
        "recentSyncs": [log.to_dict() for log in logs],
    }


@router.get("/test")
async def test_hubspot_connection(
    region: Optional[str] = Query(default=None),
    principal: Optional[Principal] = Depends(get_current_principal),
) -> JSONResponse:
    """Check the token works and which read scopes it has."""
    require_permission(principal, Permission.TRIGGER_SYNC)
    if region:
        require_region_access(principal, region)

    try:
        client = create_hubspot_client(region_code=region)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    connection = await client.test_connection()
    if not connection["success"]:
        return JSONResponse(
            status_code=400, content={"success": False, "message": connection["message"]}
        )

    scopes = await client.check_scopes()
    deals_granted = scopes["deals"]["granted"]
    if all(scope["granted"] for scope in scopes.values()):
        message = "Successfully connected to HubSpot API with all required scopes"
    elif deals_granted:
        message = "Connected to HubSpot API, but some scopes are missing"
    else:
        message = "Failed to access HubSpot deals. Check the API key and scopes"

    return JSONResponse(
        content={"success": deals_granted, "message": message, "details": {"scopes": scopes}}
    )
