"""
Synchronization Engine Tests (coalesce upsert, new-shipment detection, audit log)
"""
import asyncio
from datetime import date

import httpx
import pytest

from backoffice.models import PendingOrder, RemoteOrder, RemoteShipment, SyncRun, SyncRunStatus, SyncType
from backoffice.services.b2b_client import B2BClient
from backoffice.services.b2b_sync import SyncEngine, map_portal_order, map_portal_shipment
from backoffice.services.exceptions import B2BAuthError, NotConfiguredError
from backoffice.services.rate_limiter import IntervalPacer
from conftest import RecordingNotifier, StubAuth


def portal_client(stub_auth, recording_sleep, shipments_by_org, failing_orgs=(), orders_by_org=None):
    """B2B client over a mock portal; failing_orgs raise on their shipment fetch"""
    orders_by_org = orders_by_org or {}

    def handler(request):
        org = request.headers["x-ccorganization"]
        if request.url.path.endswith("RecentShipment"):
            if org in failing_orgs:
                raise httpx.ConnectError("store unreachable")
            return httpx.Response(200, json={"shipments": shipments_by_org.get(org, [])})
        items = orders_by_org.get(org, [])
        return httpx.Response(200, json={"items": items, "total": len(items)})

    return B2BClient(
        auth=stub_auth,
        base_url="https://b2b.test",
        store_orgs={"A": "1", "B": "2"},
        page_size=25,
        page_pacer=IntervalPacer(0.2, sleep=recording_sleep),
        store_pacer=IntervalPacer(0.5, sleep=recording_sleep),
        transport=httpx.MockTransport(handler),
        max_retries=0,
    )


def shipment_values(**overrides):
    values = map_portal_shipment({
        "shipmentId": "S1",
        "custPONumber": "PO-1",
        "shipTo": "  Hamm Tainan  ",
        "shippedTotal": 1000,
        "shippedQty": 2,
        "trackingUrl": "http://x",
        "dateShipped": "2024-03-01T08:00:00Z",
        "store": "A",
        "orgId": "1",
    })
    values.update(overrides)
    return values


def row_state(row):
    return (
        row.shipment_id, row.cust_po_number, row.ship_to, row.date_shipped, float(row.shipped_total),
        row.shipped_qty, row.tracking_url, row.currency_code, row.store, row.org_id, row.raw_data,
    )


class TestRecordMapping:
    def test_shipment_mapping(self):
        values = shipment_values()
        assert values["shipment_id"] == "S1"
        assert values["ship_to"] == "Hamm Tainan"
        assert values["date_shipped"] == date(2024, 3, 1)
        assert values["raw_data"]["orgId"] == "1"

    def test_shipment_number_fallback_and_missing_id(self):
        assert map_portal_shipment({"shipmentNumber": 778})["shipment_id"] == "778"
        assert map_portal_shipment({"custPONumber": "PO"}) is None

    def test_order_mapping_reads_dynamic_properties(self):
        values = map_portal_order({
            "orderId": "o100",
            "state": "SUBMITTED",
            "creationTime": 1709251200000,
            "dynamicProperties": [{"id": "sbc_ebsId", "value": "EBS-55"}, {"id": "sbc_country", "value": "TW"}],
            "store": "A",
            "orgId": "1",
        })
        assert values["order_number"] == "EBS-55"
        assert values["currency_code"] == "TWD"
        assert values["order_date"] == date(2024, 3, 1)
        assert values["order_status"] == "SUBMITTED"

    def test_order_outside_taiwan_is_usd(self):
        assert map_portal_order({"orderId": "o1"})["currency_code"] == "USD"


class TestCoalesceUpsert:
    """Idempotent, non-destructive merge keyed by the remote id"""

    def test_same_record_twice_is_idempotent(self, db_session):
        engine = SyncEngine(db_session, notifier=RecordingNotifier())
        engine.upsert_shipment(shipment_values())
        first = row_state(db_session.query(RemoteShipment).one())
        db_session.expire_all()

        engine.upsert_shipment(shipment_values())
        rows = db_session.query(RemoteShipment).all()
        assert len(rows) == 1
        assert row_state(rows[0]) == first

    def test_absent_field_keeps_previous_value(self, db_session):
        engine = SyncEngine(db_session, notifier=RecordingNotifier())
        engine.upsert_shipment(shipment_values())
        engine.upsert_shipment(shipment_values(tracking_url=None, shipped_total=1200))
        db_session.expire_all()

        row = db_session.query(RemoteShipment).one()
        assert row.tracking_url == "http://x"
        assert float(row.shipped_total) == 1200

    def test_currency_default_applies_on_insert_only(self, db_session):
        engine = SyncEngine(db_session, notifier=RecordingNotifier())
        engine.upsert_shipment(shipment_values(currency_code=None))
        db_session.expire_all()
        assert db_session.query(RemoteShipment).one().currency_code == "TWD"

        engine.upsert_shipment(shipment_values(currency_code="USD"))
        engine.upsert_shipment(shipment_values(currency_code=None))
        db_session.expire_all()
        assert db_session.query(RemoteShipment).one().currency_code == "USD"


class TestPullSync:
    """Full pull pass over all stores"""

    @pytest.mark.asyncio
    async def test_end_to_end_with_one_failing_store(self, db_session, stub_auth, recording_sleep, notifier):
        client = portal_client(
            stub_auth, recording_sleep,
            shipments_by_org={"1": [{"shipmentId": "S1", "shippedTotal": 1000}]},
            failing_orgs=("2",),
        )
        result = await SyncEngine(db_session, client=client, notifier=notifier).run_b2b_sync()

        assert result["shipments"] == 1
        assert result["total"] == 1
        assert result["stores"] == {"A": {"shipments": 1, "orders": 0}, "B": {"shipments": 0, "orders": 0}}

        shipment = db_session.query(RemoteShipment).one()
        assert shipment.shipment_id == "S1"
        assert shipment.store == "A"

        run = db_session.query(SyncRun).one()
        assert run.status == SyncRunStatus.SUCCESS
        assert run.sync_type == SyncType.B2B_PULL.value
        assert run.records_synced == 1
        assert run.completed_at is not None
        outcomes = {o["store"]: o for o in run.store_outcomes}
        assert outcomes["A"]["ok"] is True
        assert outcomes["B"]["ok"] is False

        assert len(notifier.sent) == 1
        assert "S1" in notifier.sent[0][2]
        assert "A: S1 (PO: -, $1000)" in notifier.sent[0][2]

    @pytest.mark.asyncio
    async def test_resync_same_batch_sends_no_new_notification(self, db_session, stub_auth, recording_sleep, notifier):
        client = portal_client(
            stub_auth, recording_sleep,
            shipments_by_org={"1": [{"shipmentId": "S1", "shippedTotal": 1000, "trackingUrl": "http://x"}]},
        )
        engine = SyncEngine(db_session, client=client, notifier=notifier)
        await engine.run_b2b_sync()
        await engine.run_b2b_sync()

        assert db_session.query(RemoteShipment).count() == 1
        assert len(notifier.sent) == 1
        assert db_session.query(SyncRun).count() == 2

    @pytest.mark.asyncio
    async def test_orders_are_upserted(self, db_session, stub_auth, recording_sleep, notifier):
        client = portal_client(
            stub_auth, recording_sleep,
            shipments_by_org={},
            orders_by_org={"2": [{"orderId": "o9", "state": "SHIPPED",
                                  "dynamicProperties": [{"id": "sbc_ebsId", "value": "PO-9"}]}]},
        )
        result = await SyncEngine(db_session, client=client, notifier=notifier).run_b2b_sync()

        assert result["orders"] == 1
        order = db_session.query(RemoteOrder).one()
        assert (order.order_id, order.order_number, order.store, order.org_id) == ("o9", "PO-9", "B", "2")
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_sync(self, db_session, stub_auth, recording_sleep):
        notifier = RecordingNotifier(fail=True)
        client = portal_client(stub_auth, recording_sleep, shipments_by_org={"1": [{"shipmentId": "S1"}]})
        result = await SyncEngine(db_session, client=client, notifier=notifier).run_b2b_sync()

        assert result["shipments"] == 1
        assert len(notifier.sent) == 1
        assert db_session.query(SyncRun).one().status == SyncRunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_auth_failure_records_error_run(self, db_session, recording_sleep, notifier):
        auth = StubAuth(error=B2BAuthError("SAML login failed: 401", 401))
        client = portal_client(auth, recording_sleep, shipments_by_org={})
        with pytest.raises(B2BAuthError):
            await SyncEngine(db_session, client=client, notifier=notifier).run_b2b_sync()

        run = db_session.query(SyncRun).one()
        assert run.status == SyncRunStatus.ERROR
        assert "SAML login failed" in run.error_message

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_before_any_run(self, db_session, recording_sleep, notifier):
        client = portal_client(StubAuth(configured=False), recording_sleep, shipments_by_org={})
        with pytest.raises(NotConfiguredError):
            await SyncEngine(db_session, client=client, notifier=notifier).run_b2b_sync()
        assert db_session.query(SyncRun).count() == 0

    @pytest.mark.asyncio
    async def test_cancelled_pass_is_recorded_as_error(self, db_session, stub_auth, recording_sleep, notifier):
        client = portal_client(stub_auth, recording_sleep, shipments_by_org={})

        async def cancelled():
            raise asyncio.CancelledError()

        client.fetch_all_stores_data = cancelled
        with pytest.raises(asyncio.CancelledError):
            await SyncEngine(db_session, client=client, notifier=notifier).run_b2b_sync()

        run = db_session.query(SyncRun).one()
        assert run.status == SyncRunStatus.ERROR
        assert run.error_message == "CancelledError"
        assert run.completed_at is not None


class TestPushSync:
    """Pre-fetched batch posted by an external scraper"""

    def test_applies_present_collections_only(self, db_session):
        engine = SyncEngine(db_session, notifier=RecordingNotifier())
        result = engine.apply_pushed_batch({
            "shipments": [{"shipment_id": "P1", "tracking_url": "http://t", "shipped_total": "500"}, {"no_id": True}],
            "pending_orders": [{"order_id": "PEND-1", "total_amount": 100, "submitted_date": "2024-02-03"}],
        })

        assert result == {"shipments": 1, "pending_orders": 1, "total": 2}
        pending = db_session.query(PendingOrder).one()
        assert pending.submitted_date == date(2024, 2, 3)
        assert pending.currency_code == "TWD"
        run = db_session.query(SyncRun).one()
        assert run.sync_type == SyncType.PUSH.value
        assert run.records_synced == 2

    def test_push_merges_with_pulled_data(self, db_session):
        engine = SyncEngine(db_session, notifier=RecordingNotifier())
        engine.upsert_shipment(shipment_values())
        engine.apply_pushed_batch({"shipments": [{"shipment_id": "S1", "order_type": "Bike"}]})
        db_session.expire_all()

        row = db_session.query(RemoteShipment).one()
        assert row.order_type == "Bike"
        assert row.tracking_url == "http://x"
        assert row.raw_data["store"] == "A"

    def test_push_without_payload_keeps_stored_order_payload(self, db_session):
        engine = SyncEngine(db_session, notifier=RecordingNotifier())
        engine.apply_pushed_batch({"orders": [{"order_id": "O1", "raw_data": {"orgId": "1"}}]})
        engine.apply_pushed_batch({"orders": [{"order_id": "O1", "order_status": "SHIPPED"}]})
        db_session.expire_all()

        order = db_session.query(RemoteOrder).one()
        assert order.order_status == "SHIPPED"
        assert order.raw_data == {"orgId": "1"}

    def test_push_without_payload_keeps_stored_pending_order_payload(self, db_session):
        engine = SyncEngine(db_session, notifier=RecordingNotifier())
        engine.apply_pushed_batch({"pending_orders": [{"order_id": "P1", "raw_data": {"lines": 2}}]})
        engine.apply_pushed_batch({"pending_orders": [{"order_id": "P1", "total_amount": 900}]})
        db_session.expire_all()

        pending = db_session.query(PendingOrder).one()
        assert float(pending.total_amount) == 900
        assert pending.raw_data == {"lines": 2}

    def test_missing_payload_is_stored_as_sql_null(self, db_session):
        SyncEngine(db_session, notifier=RecordingNotifier()).apply_pushed_batch({"orders": [{"order_id": "O2"}]})
        assert db_session.query(RemoteOrder).filter(RemoteOrder.raw_data.is_(None)).count() == 1


class TestSyncHistory:
    def test_newest_first_with_limit(self, db_session):
        engine = SyncEngine(db_session, notifier=RecordingNotifier())
        engine.apply_pushed_batch({"orders": [{"order_id": "o1"}]})
        engine.apply_pushed_batch({"orders": [{"order_id": "o2"}, {"order_id": "o3"}]})

        history = engine.get_sync_history(limit=1)
        assert len(history) == 1
        assert history[0]["recordsSynced"] == 2
        assert history[0]["status"] == "success"
        assert history[0]["syncType"] == "specialized-sync"
