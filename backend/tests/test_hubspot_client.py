import asyncio
import json
import time
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from config import settings
from connectors import hubspot
from connectors.hubspot import HubSpotAPIError, HubSpotClient, create_hubspot_client


def _client(handler, max_retries: int = 1) -> HubSpotClient:
    return HubSpotClient(
        "test-token",
        base_url="https://hubspot.test",
        max_retries=max_retries,
        transport=httpx.MockTransport(handler),
    )


def test_fetch_deals_follows_paging_cursor() -> None:
    seen_after: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer test-token"
        after = request.url.params.get("after")
        seen_after.append(after)
        if after is None:
            return httpx.Response(
                200,
                json={"results": [{"id": "1"}, {"id": "2"}], "paging": {"next": {"after": "2"}}},
            )
        return httpx.Response(200, json={"results": [{"id": "3"}]})

    deals = asyncio.run(_client(handler).fetch_deals(limit=2))

    assert [d["id"] for d in deals] == ["1", "2", "3"]
    assert seen_after == [None, "2"]


def test_search_window_matches_close_or_create_date() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/crm/v3/objects/deals/search"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"results": [{"id": "9"}]})

    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    end = datetime(2024, 3, 31, tzinfo=timezone.utc)
    deals = asyncio.run(
        _client(handler).fetch_deals_with_filters(close_date=(start, end), owner_id="101")
    )

    assert deals == [{"id": "9"}]
    groups = bodies[0]["filterGroups"]
    assert [g["filters"][0]["propertyName"] for g in groups] == ["closedate", "createdate"]
    for group in groups:
        assert group["filters"][0] == {
            "propertyName": group["filters"][0]["propertyName"],
            "operator": "GTE",
            "value": "1704067200000",
        }
        assert group["filters"][1]["value"] == "1711843200000"
        assert group["filters"][2] == {
            "propertyName": "hubspot_owner_id", "operator": "EQ", "value": "101",
        }


def test_rate_limited_request_is_retried() -> None:
    attempts: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, json={"results": [{"id": "7", "email": "a@example.com"}]})

    owners = asyncio.run(_client(handler).fetch_owners())

    assert len(attempts) == 2
    assert owners[0]["id"] == "7"


def test_error_status_raises_with_status_and_body() -> None:
    client = _client(lambda request: httpx.Response(401, text="expired"))

    with pytest.raises(HubSpotAPIError) as exc_info:
        asyncio.run(client.fetch_pipelines())

    assert exc_info.value.status_code == 401
    assert exc_info.value.body == "expired"


def test_line_item_associations_are_string_ids_and_404_is_empty() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if "/deals/missing/" in request.url.path:
            return httpx.Response(404)
        return httpx.Response(200, json={"results": [{"toObjectId": 11}, {"toObjectId": 12}]})

    client = _client(handler)

    assert asyncio.run(client.fetch_deal_line_item_associations("1")) == ["11", "12"]
    assert asyncio.run(client.fetch_deal_line_item_associations("missing")) == []


def test_batch_read_failure_yields_empty_list() -> None:
    client = _client(lambda request: httpx.Response(500, text="boom"), max_retries=0)

    assert asyncio.run(client.fetch_line_items(["11"])) == []
    assert asyncio.run(client.fetch_contacts([])) == []


def test_fetch_deal_with_associations_collects_line_items_and_contacts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/crm/v3/objects/deals/5":
            return httpx.Response(200, json={
                "id": "5",
                "associations": {
                    "line items": {"results": [{"id": "11"}]},
                    "contacts": {"results": [{"id": "21"}]},
                },
            })
        object_type = request.url.path.split("/")[4]
        ids = [i["id"] for i in json.loads(request.content)["inputs"]]
        return httpx.Response(200, json={"results": [{"id": i, "type": object_type} for i in ids]})

    bundle = asyncio.run(_client(handler).fetch_deal_with_associations("5"))

    assert bundle["deal"]["id"] == "5"
    assert bundle["line_items"] == [{"id": "11", "type": "line_items"}]
    assert bundle["contacts"] == [{"id": "21", "type": "contacts"}]


def test_fetch_deal_with_associations_returns_none_on_failure() -> None:
    client = _client(lambda request: httpx.Response(404, text="not found"))

    assert asyncio.run(client.fetch_deal_with_associations("5")) is None


def test_connection_check_reports_instead_of_raising() -> None:
    ok = asyncio.run(_client(lambda r: httpx.Response(200, json={"results": []})).test_connection())
    denied = asyncio.run(_client(lambda r: httpx.Response(401)).test_connection())

    assert ok["success"] is True
    assert denied["success"] is False
    assert "401" in denied["message"]


def test_scope_check_marks_each_scope() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/crm/v3/owners":
            return httpx.Response(403)
        return httpx.Response(200, json={"results": []})

    scopes = asyncio.run(_client(handler).check_scopes())

    assert scopes["deals"] == {"granted": True}
    assert scopes["pipelines"] == {"granted": True}
    assert scopes["owners"]["granted"] is False


def test_create_client_requires_a_key(monkeypatch) -> None:
    monkeypatch.setattr(settings, "HUBSPOT_API_KEY", None)
    monkeypatch.setattr(settings, "HUBSPOT_API_KEY_GLOBAL", None)
    monkeypatch.delenv("HUBSPOT_API_KEY_JP", raising=False)

    with pytest.raises(ValueError):
        create_hubspot_client(region_code="JP")

    monkeypatch.setenv("HUBSPOT_API_KEY_JP", "jp-token")
    assert create_hubspot_client(region_code="jp").api_key == "jp-token"
    assert isinstance(create_hubspot_client("explicit"), hubspot.HubSpotClient)


def test_naive_window_bounds_are_read_as_utc(monkeypatch) -> None:
    monkeypatch.setenv("TZ", "Asia/Tokyo")
    if hasattr(time, "tzset"):
        time.tzset()
    try:
        assert hubspot._epoch_millis(datetime(2024, 1, 1)) == "1704067200000"
        tokyo = timezone(timedelta(hours=9))
        assert hubspot._epoch_millis(datetime(2024, 1, 1, 9, tzinfo=tokyo)) == "1704067200000"
    finally:
        monkeypatch.undo()
        if hasattr(time, "tzset"):
            time.tzset()


def test_search_stops_at_result_limit(monkeypatch) -> None:
    monkeypatch.setattr(hubspot, "SEARCH_RESULT_LIMIT", 4)
    pages: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        after = json.loads(request.content).get("after")
        pages.append(after)
        start = int(after or 0)
        return httpx.Response(200, json={
            "results": [{"id": str(start + i)} for i in range(2)],
            "paging": {"next": {"after": str(start + 2)}},
        })

    deals = asyncio.run(
        _client(handler).fetch_deals_with_filters(
            close_date=(datetime(2024, 1, 1), datetime(2024, 12, 31))
        )
    )

    assert len(deals) == 4
    assert pages == [None, "2"]


def test_batch_read_is_sent_in_chunks_of_one_hundred() -> None:
    chunk_sizes: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        inputs = json.loads(request.content)["inputs"]
        chunk_sizes.append(len(inputs))
        return httpx.Response(200, json={"results": [{"id": i["id"]} for i in inputs]})

    ids = [str(i) for i in range(250)]
    items = asyncio.run(_client(handler).fetch_line_items(ids))

    assert chunk_sizes == [100, 100, 50]
    assert [item["id"] for item in items] == ids


def test_batch_read_with_one_failed_chunk_yields_nothing() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 2:
            return httpx.Response(400, text="too many inputs")
        inputs = json.loads(request.content)["inputs"]
        return httpx.Response(200, json={"results": [{"id": i["id"]} for i in inputs]})

    client = _client(handler, max_retries=0)

    assert asyncio.run(client.fetch_line_items([str(i) for i in range(150)])) == []
