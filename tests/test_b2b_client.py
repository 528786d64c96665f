"""
B2B Data Client Tests (pagination, per-store resilience, pacing)
"""
import httpx
import pytest

from backoffice.services.b2b_client import B2BClient, parse_line_item
from backoffice.services.exceptions import B2BRequestError
from backoffice.services.rate_limiter import IntervalPacer

BASE_URL = "https://b2b.test"


def make_client(handler, stub_auth, clock, sleep, store_orgs=None, page_size=2):
    return B2BClient(
        auth=stub_auth,
        base_url=BASE_URL,
        store_orgs=store_orgs if store_orgs is not None else {"A": "1"},
        page_size=page_size,
        page_pacer=IntervalPacer(0.2, sleep=sleep, clock=clock),
        store_pacer=IntervalPacer(0.5, sleep=sleep, clock=clock),
        transport=httpx.MockTransport(handler),
        max_retries=0,
    )


def orders_page(total, request):
    offset = int(request.url.params["offset"])
    limit = int(request.url.params["limit"])
    items = [{"orderId": f"o{i}"} for i in range(offset, min(offset + limit, total))]
    return httpx.Response(200, json={"items": items, "total": total})


class TestFetchShipments:
    @pytest.mark.asyncio
    async def test_sends_org_scoped_headers(self, stub_auth, clock, recording_sleep):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"shipments": [{"shipmentId": "S1"}]})

        client = make_client(handler, stub_auth, clock, recording_sleep)
        shipments = await client.fetch_shipments("tok", "4200039")

        assert shipments == [{"shipmentId": "S1"}]
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/ccstorex/custom/v1/RecentShipment"
        assert request.headers["authorization"] == "Bearer tok"
        assert request.headers["x-ccorganization"] == "4200039"
        assert request.headers["x-ccprofiletype"] == "storefrontUI"

    @pytest.mark.asyncio
    async def test_missing_shipments_key_is_empty(self, stub_auth, clock, recording_sleep):
        client = make_client(lambda r: httpx.Response(200, json={}), stub_auth, clock, recording_sleep)
        assert await client.fetch_shipments("tok", "1") == []

    @pytest.mark.asyncio
    async def test_non_2xx_raises(self, stub_auth, clock, recording_sleep):
        client = make_client(lambda r: httpx.Response(500, text="boom"), stub_auth, clock, recording_sleep)
        with pytest.raises(B2BRequestError) as exc_info:
            await client.fetch_shipments("tok", "1")
        assert exc_info.value.status == 500


class TestFetchOrders:
    """limit/offset pagination with pacing between pages"""

    @pytest.mark.asyncio
    async def test_pages_until_short_page(self, stub_auth, clock, recording_sleep):
        offsets = []

        def handler(request):
            offsets.append(int(request.url.params["offset"]))
            return orders_page(5, request)

        client = make_client(handler, stub_auth, clock, recording_sleep)
        orders = await client.fetch_orders("tok", "1")

        assert [o["orderId"] for o in orders] == ["o0", "o1", "o2", "o3", "o4"]
        assert offsets == [0, 2, 4]
        assert recording_sleep.calls == [pytest.approx(0.2), pytest.approx(0.2)]

    @pytest.mark.asyncio
    async def test_stops_when_total_reached(self, stub_auth, clock, recording_sleep):
        calls = []

        def handler(request):
            calls.append(request)
            return orders_page(2, request)

        client = make_client(handler, stub_auth, clock, recording_sleep)
        orders = await client.fetch_orders("tok", "1")
        assert len(orders) == 2
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_error_page_returns_partial_results(self, stub_auth, clock, recording_sleep):
        def handler(request):
            if request.url.params["offset"] == "2":
                return httpx.Response(500, text="upstream error")
            return orders_page(10, request)

        client = make_client(handler, stub_auth, clock, recording_sleep)
        orders = await client.fetch_orders("tok", "1")
        assert [o["orderId"] for o in orders] == ["o0", "o1"]


class TestFetchOrderDetail:
    @pytest.mark.asyncio
    async def test_normalizes_line_items(self, stub_auth, clock, recording_sleep):
        def handler(request):
            assert request.url.path == "/ccstore/v1/orders/o42"
            return httpx.Response(200, json={
                "orderId": "o42",
                "state": "SUBMITTED",
                "commerceItems": [
                    {"productId": "P1", "catRefId": "BIKE-001", "displayName": "Allez", "quantity": 2,
                     "rawTotalPrice": 70000, "unitPrice": 35000},
                    {"productId": "P2", "catalogRefId": "HELM-200", "productDisplayName": "Prevail 3",
                     "amount": 9800, "listPrice": 9800},
                ],
            })

        client = make_client(handler, stub_auth, clock, recording_sleep)
        detail = await client.fetch_order_detail("o42", "1")

        assert detail.order_id == "o42"
        first, second = detail.items
        assert (first.cat_ref_id, first.display_name, first.quantity) == ("BIKE-001", "Allez", 2)
        assert (second.cat_ref_id, second.display_name, second.quantity) == ("HELM-200", "Prevail 3", 1)
        assert second.raw_total_price == 9800
        assert second.unit_price == 9800
        assert stub_auth.calls == 1

    @pytest.mark.asyncio
    async def test_non_2xx_returns_none(self, stub_auth, clock, recording_sleep):
        client = make_client(lambda r: httpx.Response(404), stub_auth, clock, recording_sleep)
        assert await client.fetch_order_detail("missing", "1", token="tok") is None

    @pytest.mark.asyncio
    async def test_retry_backoff_uses_injected_sleep(self, stub_auth, clock, recording_sleep):
        statuses = [503, 200]

        def handler(request):
            status = statuses.pop(0)
            if status != 200:
                return httpx.Response(status)
            return httpx.Response(200, json={"orderId": "o7", "commerceItems": []})

        client = B2BClient(
            auth=stub_auth,
            base_url=BASE_URL,
            store_orgs={"A": "1"},
            page_pacer=IntervalPacer(0, sleep=recording_sleep, clock=clock),
            store_pacer=IntervalPacer(0, sleep=recording_sleep, clock=clock),
            transport=httpx.MockTransport(handler),
            max_retries=1,
            retry_sleep=recording_sleep,
        )
        detail = await client.fetch_order_detail("o7", "1", token="tok")

        assert detail.order_id == "o7"
        assert statuses == []
        assert recording_sleep.calls == [pytest.approx(1.0)]

    def test_reference_falls_back_to_product_id(self):
        item = parse_line_item({"productId": "P9", "displayName": "Saddle"})
        assert item.reference == "P9"


class TestFetchAllStoresData:
    """Sequential per-store fetch with failure isolation"""

    @pytest.mark.asyncio
    async def test_one_store_failure_does_not_stop_others(self, stub_auth, clock, recording_sleep):
        def handler(request):
            org = request.headers["x-ccorganization"]
            if request.url.path.endswith("RecentShipment"):
                if org == "1":
                    raise httpx.ConnectError("connection reset")
                return httpx.Response(200, json={"shipments": [{"shipmentId": "S2"}]})
            return httpx.Response(200, json={"items": [{"orderId": f"o-{org}"}], "total": 1})

        client = make_client(handler, stub_auth, clock, recording_sleep, store_orgs={"A": "1", "B": "2"})
        data = await client.fetch_all_stores_data()

        assert data.shipments == [{"shipmentId": "S2", "store": "B", "orgId": "2"}]
        assert {o["orderId"] for o in data.orders} == {"o-1", "o-2"}
        outcome_a, outcome_b = data.outcomes
        assert not outcome_a.ok and outcome_a.errors[0].startswith("shipments")
        assert outcome_a.orders == 1
        assert outcome_b.ok and outcome_b.shipments == 1
        assert stub_auth.calls == 1
        # one pause between the two stores
        assert recording_sleep.calls == [pytest.approx(0.5)]
