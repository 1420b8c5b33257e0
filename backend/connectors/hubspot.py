"""
HubSpot CRM client.

Responsibilities:
- Authenticate with a private-app bearer token (one per region)
- Fetch Deals (full scan or server-side search), Owners, Pipelines
- Batch-read Line Items and Contacts for deal associations
- Handle pagination and transient failures (429 / 5xx) with a short retry

Docs: https://developers.hubspot.com/docs/api/crm/deals
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from config import get_hubspot_api_key, settings

logger = logging.getLogger(__name__)

# Status codes that are safe to retry
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 502, 503, 504})

# Max seconds to honour from a Retry-After header (keeps us inside serverless budgets)
MAX_RETRY_WAIT_SECONDS: float = 2.0

# HubSpot caps batch reads at 100 inputs and search paging at 10,000 results
BATCH_READ_LIMIT: int = 100
SEARCH_RESULT_LIMIT: int = 10_000

DEFAULT_DEAL_PROPERTIES: list[str] = [
    "dealname",
    "amount",
    "deal_currency_code",
    "dealstage",
    "pipeline",
    "closedate",
    "createdate",
    "hs_lastmodifieddate",
    "hubspot_owner_id",
    "hs_deal_stage_probability",
    "hs_forecast_category",
    "distributor",
    "deploy_time",
    "expected_close_date",
    "end_user_location__dr_",
]

LINE_ITEM_PROPERTIES: list[str] = [
    "name", "quantity", "price", "amount", "description", "hs_product_id",
]

CONTACT_PROPERTIES: list[str] = [
    "firstname", "lastname", "email", "jobtitle", "phone", "company",
]


class HubSpotAPIError(RuntimeError):
    """Non-2xx response from HubSpot, with status and body kept for diagnosis."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HubSpot API error: {status_code} - {body}")
        self.status_code = status_code
        self.body = body


def _epoch_millis(value: datetime) -> str:
    """HubSpot search filters compare dates as epoch milliseconds. Naive values are UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return str(int(value.timestamp() * 1000))


class HubSpotClient:
    """Async client for the HubSpot CRM v3/v4 APIs."""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url or settings.HUBSPOT_API_BASE
        self.timeout = timeout if timeout is not None else settings.HUBSPOT_TIMEOUT_SECONDS
        self.max_retries = (
            max_retries if max_retries is not None else settings.HUBSPOT_MAX_RETRIES
        )
        self._transport = transport

    @property
    def headers(self) -> dict[str, str]:
        """Authorization headers for HubSpot API."""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _send(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a request, retrying transient statuses. Returns the final response."""
        url: str = f"{self.base_url}{endpoint}"

        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            response: httpx.Response = await client.request(
                method=method,
                url=url,
                headers=self.headers,
                params=params,
                json=json_data,
            )
            for attempt in range(self.max_retries):
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    break
                retry_after: str = response.headers.get("Retry-After", "1")
                try:
                    wait_secs: float = min(float(retry_after), MAX_RETRY_WAIT_SECONDS)
                except ValueError:
                    wait_secs = 1.0
                logger.info(
                    f"[HubSpot] {response.status_code} on {endpoint}, retrying in {wait_secs}s "
                    f"(attempt {attempt + 1}/{self.max_retries})"
                )
                await asyncio.sleep(wait_secs)
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self.headers,
                    params=params,
                    json=json_data,
                )
            return response

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Make an authenticated request; raise HubSpotAPIError on non-2xx."""
        response = await self._send(method, endpoint, params=params, json_data=json_data)
        if response.status_code >= 400:
            raise HubSpotAPIError(response.status_code, response.text[:500])
        return response.json()

    async def fetch_deals(
        self,
        limit: int = 100,
        properties: Optional[list[str]] = None,
        associations: Optional[list[str]] = None,
        max_pages: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """Fetch every deal by following the ``paging.next.after`` cursor."""
        all_deals: list[dict[str, Any]] = []
        after: Optional[str] = None
        page_count = 0

        while True:
            params: dict[str, Any] = {
                "limit": limit,
                "properties": ",".join(properties or DEFAULT_DEAL_PROPERTIES),
            }
            if associations:
                params["associations"] = ",".join(associations)
            if after:
                params["after"] = after

            data = await self._make_request("GET", "/crm/v3/objects/deals", params=params)
            all_deals.extend(data.get("results", []))
            page_count += 1

            after = data.get("paging", {}).get("next", {}).get("after")
            if not after or (max_pages is not None and page_count >= max_pages):
                break

        if page_count > 1:
            logger.info(f"[HubSpot] deals: fetched {page_count} pages, {len(all_deals)} total results")
        return all_deals

    async def fetch_deals_with_filters(
        self,
        close_date: Optional[tuple[datetime, datetime]] = None,
        deal_stages: Optional[list[str]] = None,
        owner_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """
        Fetch deals through the search API.

        A date window matches deals whose close date OR create date falls in
        it (two filter groups). Stage and owner filters apply to every group.
        """
        common_filters: list[dict[str, Any]] = []
        if deal_stages:
            common_filters.append(
                {"propertyName": "dealstage", "operator": "IN", "values": list(deal_stages)}
            )
        if owner_id:
            common_filters.append(
                {"propertyName": "hubspot_owner_id", "operator": "EQ", "value": owner_id}
            )

        filter_groups: list[dict[str, Any]] = []
        if close_date:
            start, end = close_date
            for prop in ("closedate", "createdate"):
                filter_groups.append({
                    "filters": [
                        {"propertyName": prop, "operator": "GTE", "value": _epoch_millis(start)},
                        {"propertyName": prop, "operator": "LTE", "value": _epoch_millis(end)},
                        *common_filters,
                    ],
                })
        elif common_filters:
            filter_groups.append({"filters": common_filters})

        all_deals: list[dict[str, Any]] = []
        after: Optional[str] = None
        while True:
            body: dict[str, Any] = {
                "filterGroups": filter_groups,
                "properties": DEFAULT_DEAL_PROPERTIES,
                "limit": 100,
            }
            if after:
                body["after"] = after

            data = await self._make_request("POST", "/crm/v3/objects/deals/search", json_data=body)
            all_deals.extend(data.get("results", []))

            after = data.get("paging", {}).get("next", {}).get("after")
            if not after:
                break

            if len(all_deals) >= SEARCH_RESULT_LIMIT:
                logger.warning(
                    f"[HubSpot] Search hit the {SEARCH_RESULT_LIMIT} result limit; "
                    "narrow the date window to fetch the rest"
                )
                break

        return all_deals

    async def fetch_owners(self) -> list[dict[str, Any]]:
        """Fetch deal owners (id, email, firstName, lastName)."""
        data = await self._make_request("GET", "/crm/v3/owners")
        return data.get("results", [])

    async def fetch_pipelines(self) -> list[dict[str, Any]]:
        """Fetch deal pipelines with their stages and stage metadata."""
        data = await self._make_request("GET", "/crm/v3/pipelines/deals")
        return data.get("results", [])

    async def _batch_read(
        self, object_type: str, ids: list[str], properties: list[str]
    ) -> list[dict[str, Any]]:
        """
        Batch-read objects by id, BATCH_READ_LIMIT ids per request.

        Any failed chunk is logged and the whole read yields [], so callers
        never see a partial set.
        """
        results: list[dict[str, Any]] = []
        for offset in range(0, len(ids), BATCH_READ_LIMIT):
            chunk = ids[offset:offset + BATCH_READ_LIMIT]
            try:
                response = await self._send(
                    "POST",
                    f"/crm/v3/objects/{object_type}/batch/read",
                    json_data={
                        "properties": properties,
                        "inputs": [{"id": object_id} for object_id in chunk],
                    },
                )
            except httpx.HTTPError as exc:
                logger.warning(f"[HubSpot] Failed to fetch {object_type}: {exc}")
                return []

            if response.status_code >= 400:
                logger.warning(
                    f"[HubSpot] Failed to fetch {object_type}: {response.status_code} - {response.text[:200]}"
                )
                return []
            results.extend(response.json().get("results", []))
        return results

    async def fetch_line_items(self, line_item_ids: list[str]) -> list[dict[str, Any]]:
        """Batch fetch line items by IDs."""
        return await self._batch_read("line_items", line_item_ids, LINE_ITEM_PROPERTIES)

    async def fetch_contacts(self, contact_ids: list[str]) -> list[dict[str, Any]]:
        """Batch fetch contacts by IDs."""
        return await self._batch_read("contacts", contact_ids, CONTACT_PROPERTIES)

    async def fetch_deal_line_item_associations(self, deal_id: str) -> list[str]:
        """Line item ids associated with one deal; [] on any failure."""
        try:
            response = await self._send(
                "GET", f"/crm/v4/objects/deals/{deal_id}/associations/line_items"
            )
        except httpx.HTTPError as exc:
            logger.warning(f"[HubSpot] Error fetching line item associations for deal {deal_id}: {exc}")
            return []

        if response.status_code >= 400:
            if response.status_code != 404:
                logger.warning(
                    f"[HubSpot] Failed to fetch line item associations for deal {deal_id}: "
                    f"{response.status_code}"
                )
            return []
        return [str(r["toObjectId"]) for r in response.json().get("results", []) if "toObjectId" in r]

    async def fetch_deal_with_associations(self, deal_id: str) -> Optional[dict[str, Any]]:
        """
        Fetch a single deal plus its line items and contacts.

        Returns ``{"deal", "line_items", "contacts"}`` or None if the deal
        itself could not be fetched.
        """
        try:
            deal = await self._make_request(
                "GET",
                f"/crm/v3/objects/deals/{deal_id}",
                params={
                    "associations": "line_items,contacts",
                    "properties": ",".join(DEFAULT_DEAL_PROPERTIES),
                },
            )
        except (HubSpotAPIError, httpx.HTTPError) as exc:
            logger.error(f"[HubSpot] Error fetching deal {deal_id} with associations: {exc}")
            return None

        associations: dict[str, Any] = deal.get("associations", {})
        # HubSpot labels this association "line items" in some API versions
        line_item_assoc = associations.get("line_items") or associations.get("line items") or {}
        line_item_ids = [r["id"] for r in line_item_assoc.get("results", [])]
        contact_ids = [r["id"] for r in associations.get("contacts", {}).get("results", [])]

        line_items, contacts = await asyncio.gather(
            self.fetch_line_items(line_item_ids),
            self.fetch_contacts(contact_ids),
        )
        return {"deal": deal, "line_items": line_items, "contacts": contacts}

    async def test_connection(self) -> dict[str, Any]:
        """Minimal read to verify the token. Never raises."""
        try:
            response = await self._send("GET", "/crm/v3/objects/deals", params={"limit": 1})
        except httpx.HTTPError as exc:
            return {"success": False, "message": str(exc) or type(exc).__name__}

        if response.status_code >= 400:
            return {
                "success": False,
                "message": f"API error: {response.status_code} - {response.reason_phrase}",
            }
        return {"success": True, "message": "Successfully connected to HubSpot API"}

    async def check_scopes(self) -> dict[str, dict[str, Any]]:
        """Check read access to deals, owners and pipelines. Never raises."""
        scope_checks: dict[str, tuple[str, Optional[dict[str, Any]]]] = {
            "deals": ("/crm/v3/objects/deals", {"limit": 1}),
            "owners": ("/crm/v3/owners", {"limit": 1}),
            "pipelines": ("/crm/v3/pipelines/deals", None),
        }
        scopes: dict[str, dict[str, Any]] = {}
        for scope, (endpoint, params) in scope_checks.items():
            try:
                response = await self._send("GET", endpoint, params=params)
            except httpx.HTTPError as exc:
                scopes[scope] = {"granted": False, "error": str(exc) or type(exc).__name__}
                continue
            if response.status_code >= 400:
                scopes[scope] = {"granted": False, "error": f"{response.status_code}"}
            else:
                scopes[scope] = {"granted": True}
        return scopes


def create_hubspot_client(api_key: Optional[str] = None, region_code: Optional[str] = None) -> HubSpotClient:
    """Create a client from an explicit key or the configured region/global key."""
    key = api_key or get_hubspot_api_key(region_code)
    if not key:
        raise ValueError("HubSpot API key not found. Set HUBSPOT_API_KEY in .env")
    return HubSpotClient(key)
