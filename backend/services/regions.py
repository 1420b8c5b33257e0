"""
Region descriptors from the regions config file.

The file is a JSON list of objects:
    [{"code": "JP", "name": "Japan", "currency": "JPY", "timezone": "Asia/Tokyo"}]
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, TypeAdapter

from config import settings
from db.repository import Repository

logger = logging.getLogger(__name__)


class RegionConfig(BaseModel):
    """Read-only description of a sales region."""

    code: str
    name: str
    currency: str = "USD"
    timezone: str = "UTC"
    hubspot_portal_id: Optional[str] = None
    is_active: bool = True


_region_list = TypeAdapter(list[RegionConfig])


def load_regions(path: Optional[str | Path] = None) -> list[RegionConfig]:
    """Load active regions. Raises FileNotFoundError if the file is missing."""
    regions_path = Path(path or settings.REGIONS_FILE)
    if not regions_path.exists():
        raise FileNotFoundError(f"Regions file not found: {regions_path}")
    regions = _region_list.validate_python(json.loads(regions_path.read_text(encoding="utf-8")))
    return [region for region in regions if region.is_active]


def get_region_config(code: str, path: Optional[str | Path] = None) -> Optional[RegionConfig]:
    """One region descriptor by code, or None."""
    try:
        regions = load_regions(path)
    except FileNotFoundError:
        return None
    return next((region for region in regions if region.code == code), None)


async def ensure_regions(repository: Repository, configs: list[RegionConfig]) -> None:
    """Make sure every configured region has a local row to reference."""
    for config in configs:
        await repository.ensure_region(
            code=config.code,
            name=config.name,
            currency=config.currency,
            timezone=config.timezone,
        )
    logger.info("Regions ensured", extra={"regions": [c.code for c in configs]})
