"""
HubSpot identifier resolution for one sync run.

Translates HubSpot owner, pipeline and stage identifiers into local names,
probabilities and pipeline keys. A resolver is built once per run from the
owners and pipelines fetched for that run and passed explicitly to the code
that needs it; nothing here is shared between runs or regions.

Stage resolution chain:
  1. (pipeline id, stage id)  -> stage declared by that pipeline
  2. stage id                 -> first pipeline that declared the stage id
  3. raw stage id as label, probability 0
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from db.repository import Repository

logger = logging.getLogger(__name__)

UNASSIGNED_OWNER = "Unassigned"


@dataclass(frozen=True)
class StageInfo:
    """Resolved stage label and win probability (0-100)."""

    label: str
    probability: float
    resolved: bool = True


def _stage_probability(metadata: dict[str, Any]) -> float:
    """HubSpot stores probability as a 0-1 fraction string; we use 0-100."""
    raw = metadata.get("probability")
    if raw in (None, ""):
        return 0.0
    try:
        return float(raw) * 100
    except (TypeError, ValueError):
        return 0.0


def owner_display_name(owner: dict[str, Any]) -> str:
    """'First Last', or the email when both name parts are blank."""
    full_name = f"{owner.get('firstName') or ''} {owner.get('lastName') or ''}".strip()
    return full_name or owner.get("email") or ""


class HubSpotResolver:
    """Lookup tables for owners, pipelines and stages.

    Build once per sync run with :func:`build_resolver` (or directly from
    fetched HubSpot payloads), then call the ``resolve_*`` methods per deal.
    """

    def __init__(
        self,
        owners: Optional[list[dict[str, Any]]] = None,
        pipelines: Optional[list[dict[str, Any]]] = None,
        pipeline_keys: Optional[dict[str, uuid.UUID]] = None,
    ) -> None:
        self._owner_names: dict[str, str] = {}
        self._owner_emails: dict[str, str] = {}
        # pipeline id -> stage id -> StageInfo
        self._stages: dict[str, dict[str, StageInfo]] = {}
        # stage id -> StageInfo, first pipeline wins
        self._flat_stages: dict[str, StageInfo] = {}
        self._pipeline_keys: dict[str, uuid.UUID] = dict(pipeline_keys or {})

        for owner in owners or []:
            owner_id = str(owner.get("id", ""))
            if not owner_id:
                continue
            self._owner_names[owner_id] = owner_display_name(owner)
            if owner.get("email"):
                self._owner_emails[owner_id] = owner["email"]

        for pipeline in pipelines or []:
            self.add_pipeline_stages(pipeline)

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def add_pipeline_stages(self, pipeline: dict[str, Any]) -> None:
        """Register the stages a HubSpot pipeline declares."""
        pipeline_id = str(pipeline.get("id", ""))
        scoped = self._stages.setdefault(pipeline_id, {})
        for stage in pipeline.get("stages", []):
            stage_id = str(stage.get("id", ""))
            if not stage_id:
                continue
            info = StageInfo(
                label=stage.get("label") or stage_id,
                probability=_stage_probability(stage.get("metadata") or {}),
            )
            scoped[stage_id] = info
            self._flat_stages.setdefault(stage_id, info)

    def add_pipeline_key(self, hubspot_pipeline_id: str, local_id: uuid.UUID) -> None:
        self._pipeline_keys[hubspot_pipeline_id] = local_id

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_stage(self, pipeline_id: Optional[str], stage_id: Optional[str]) -> StageInfo:
        """Resolve a deal's stage. Never raises."""
        if not stage_id:
            return StageInfo(label="Unknown", probability=0.0, resolved=False)

        if pipeline_id:
            scoped = self._stages.get(pipeline_id, {}).get(stage_id)
            if scoped is not None:
                return scoped

        flat = self._flat_stages.get(stage_id)
        if flat is not None:
            return flat

        return StageInfo(label=stage_id, probability=0.0, resolved=False)

    def resolve_owner(self, owner_id: Optional[str]) -> tuple[str, Optional[str]]:
        """Return (display name, email); unknown owners are 'Unassigned'."""
        if not owner_id:
            return UNASSIGNED_OWNER, None
        name = self._owner_names.get(owner_id) or UNASSIGNED_OWNER
        return name, self._owner_emails.get(owner_id)

    def resolve_pipeline_key(self, pipeline_id: Optional[str]) -> Optional[uuid.UUID]:
        """Local pipeline id, or None when the pipeline wasn't fetched this run."""
        if not pipeline_id:
            return None
        return self._pipeline_keys.get(pipeline_id)

    @property
    def owner_count(self) -> int:
        return len(self._owner_names)

    @property
    def pipeline_count(self) -> int:
        return len(self._pipeline_keys)


async def build_resolver(
    repository: Repository,
    region_id: uuid.UUID,
    owners: list[dict[str, Any]],
    pipelines: list[dict[str, Any]],
) -> HubSpotResolver:
    """
    Upsert every fetched pipeline and build the run's resolver.

    The pipeline at index 0 becomes the region's default pipeline.
    """
    resolver = HubSpotResolver(owners=owners)
    for index, pipeline in enumerate(pipelines):
        hubspot_pipeline_id = str(pipeline.get("id", ""))
        if not hubspot_pipeline_id:
            continue
        local_id = await repository.upsert_pipeline(
            region_id=region_id,
            hubspot_pipeline_id=hubspot_pipeline_id,
            name=pipeline.get("label") or "Unnamed Pipeline",
            display_order=pipeline.get("displayOrder", index),
            is_default=index == 0,
        )
        resolver.add_pipeline_key(hubspot_pipeline_id, local_id)
        resolver.add_pipeline_stages(pipeline)

    logger.info(
        "Built HubSpot resolver",
        extra={
            "region_id": str(region_id),
            "owners": resolver.owner_count,
            "pipelines": resolver.pipeline_count,
        },
    )
    return resolver
