"""
Specialized B2B synchronization engine.
- Pull: fetch every store through the B2B client, upsert shipments/orders, notify admins of new shipments.
- Push: upsert a pre-fetched batch (shipments, orders, pending orders) posted by an external scraper.
Upserts are keyed by the remote natural id and merge with COALESCE(new, existing) per column;
each upsert commits on its own so an interrupted pass is completed by the next one.
"""
import logging
import time
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from backoffice.models import PendingOrder, RemoteOrder, RemoteShipment, SyncRun, SyncRunStatus, SyncType
from backoffice.services.b2b_client import B2BClient
from backoffice.services.exceptions import NotConfiguredError
from backoffice.services.notifications import AdminNotifier

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "TWD"
EBS_ID_PROPERTY = "sbc_ebsId"
COUNTRY_PROPERTY = "sbc_country"


def _parse_date(value: Any) -> Optional[date]:
    """Lenient date: date/datetime, epoch milliseconds, or an ISO string (time part ignored)."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).date()
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def _number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _integer(value: Any) -> Optional[int]:
    number = _number(value)
    return int(number) if number is not None else None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _dynamic_property(order: dict, key: str) -> Any:
    for prop in order.get("dynamicProperties") or []:
        if isinstance(prop, dict) and prop.get("id") == key:
            return prop.get("value")
    return None


def _compact(data: dict) -> dict:
    return {k: v for k, v in data.items() if v is not None}


def map_portal_shipment(s: dict) -> Optional[dict]:
    """Portal shipment (camelCase, tagged with store/orgId) -> spec_shipments row values."""
    shipment_id = s.get("shipmentId") or s.get("shipmentNumber")
    if not shipment_id:
        return None
    return {
        "shipment_id": str(shipment_id),
        "cust_po_number": _text(s.get("custPONumber")),
        "ship_to": _text(s.get("shipTo")),
        "order_type": _text(s.get("orderType")),
        "date_shipped": _parse_date(s.get("dateShipped")),
        "shipped_total": _number(s.get("shippedTotal")),
        "shipped_qty": _integer(s.get("shippedQty")),
        "tracking_url": _text(s.get("trackingUrl")),
        "currency_code": _text(s.get("currencyCode")),
        "store": _text(s.get("store")),
        "org_id": _text(s.get("orgId")),
        "raw_data": _compact({
            "store": s.get("store"),
            "orgId": s.get("orgId"),
            "shipmentNumber": s.get("shipmentNumber"),
            "custPONumber": s.get("custPONumber"),
            "shipTo": s.get("shipTo"),
            "orderType": s.get("orderType"),
            "dateShipped": s.get("dateShipped"),
            "shippedTotal": s.get("shippedTotal"),
            "shippedQty": s.get("shippedQty"),
            "trackingUrl": s.get("trackingUrl"),
            "currencyCode": s.get("currencyCode"),
        }),
    }


def map_portal_order(o: dict) -> Optional[dict]:
    """Portal order list entry -> spec_orders row values. The list view carries no type or total."""
    if not o.get("orderId"):
        return None
    ebs_id = _dynamic_property(o, EBS_ID_PROPERTY)
    country = _dynamic_property(o, COUNTRY_PROPERTY)
    return {
        "order_id": str(o["orderId"]),
        "order_number": _text(ebs_id),
        "order_type": None,
        "order_date": _parse_date(o.get("creationTime")),
        "order_status": _text(o.get("state")),
        "total_amount": None,
        "currency_code": "TWD" if country == "TW" else "USD",
        "store": _text(o.get("store")),
        "org_id": _text(o.get("orgId")),
        "raw_data": _compact({
            "store": o.get("store"),
            "orgId": o.get("orgId"),
            "orderId": o.get("orderId"),
            "state": o.get("state"),
            "creationTime": o.get("creationTime"),
            "ebsId": ebs_id,
            "country": country,
        }),
    }


def map_pushed_shipment(s: dict) -> Optional[dict]:
    if not s.get("shipment_id"):
        return None
    raw = s.get("raw_data")
    raw_store = raw.get("store") if isinstance(raw, dict) else None
    return {
        "shipment_id": str(s["shipment_id"]),
        "cust_po_number": _text(s.get("cust_po_number")),
        "ship_to": _text(s.get("ship_to")),
        "order_type": _text(s.get("order_type")),
        "date_shipped": _parse_date(s.get("date_shipped")),
        "shipped_total": _number(s.get("shipped_total")),
        "shipped_qty": _integer(s.get("shipped_qty")),
        "tracking_url": _text(s.get("tracking_url")),
        "currency_code": _text(s.get("currency_code")),
        "store": _text(s.get("store") or raw_store),
        "org_id": _text(s.get("org_id")),
        "raw_data": raw,
    }


def map_pushed_order(o: dict) -> Optional[dict]:
    if not o.get("order_id"):
        return None
    return {
        "order_id": str(o["order_id"]),
        "order_number": _text(o.get("order_number")),
        "order_type": _text(o.get("order_type")),
        "order_date": _parse_date(o.get("order_date")),
        "order_status": _text(o.get("order_status")),
        "total_amount": _number(o.get("total_amount")),
        "currency_code": _text(o.get("currency_code")),
        "store": _text(o.get("store")),
        "org_id": _text(o.get("org_id")),
        "raw_data": o.get("raw_data"),
    }


def map_pushed_pending_order(p: dict) -> Optional[dict]:
    if not p.get("order_id"):
        return None
    return {
        "order_id": str(p["order_id"]),
        "order_number": _text(p.get("order_number")),
        "order_type": _text(p.get("order_type")),
        "order_status": _text(p.get("order_status")),
        "total_amount": _number(p.get("total_amount")),
        "submitted_date": _parse_date(p.get("submitted_date")),
        "currency_code": _text(p.get("currency_code")),
        "raw_data": p.get("raw_data"),
    }


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")


def coalesce_upsert(db: Session, model, key: str, values: dict, insert_defaults: Optional[dict] = None) -> None:
    """
    INSERT ... ON CONFLICT (key) DO UPDATE SET col = COALESCE(excluded.col, table.col).
    insert_defaults apply only when the record is new; a default never overwrites a stored value.
    Commits.
    """
    table = model.__table__
    row = dict(values)
    defaulted = set()
    for column, default in (insert_defaults or {}).items():
        if row.get(column) is None:
            row[column] = default
            defaulted.add(column)

    stmt = _insert_for(db)(table).values(**row)
    update_set = {
        column: func.coalesce(stmt.excluded[column], table.c[column])
        for column in row
        if column != key and column not in defaulted
    }
    update_set["updated_at"] = func.now()
    stmt = stmt.on_conflict_do_update(index_elements=[table.c[key]], set_=update_set)
    db.execute(stmt)
    db.commit()


class SyncEngine:
    """Drives one synchronization pass and records it as a SyncRun."""

    def __init__(self, db: Session, client: Optional[B2BClient] = None, notifier: Optional[AdminNotifier] = None):
        self.db = db
        self.client = client
        self.notifier = notifier or AdminNotifier()

    def shipment_exists(self, shipment_id: str) -> bool:
        return (
            self.db.query(RemoteShipment.shipment_id)
            .filter(RemoteShipment.shipment_id == shipment_id)
            .first()
            is not None
        )

    def upsert_shipment(self, values: dict) -> None:
        coalesce_upsert(self.db, RemoteShipment, "shipment_id", values, {"currency_code": DEFAULT_CURRENCY})

    def upsert_order(self, values: dict) -> None:
        coalesce_upsert(self.db, RemoteOrder, "order_id", values, {"currency_code": DEFAULT_CURRENCY})

    def upsert_pending_order(self, values: dict) -> None:
        coalesce_upsert(self.db, PendingOrder, "order_id", values, {"currency_code": DEFAULT_CURRENCY})

    def _start_run(self, sync_type: SyncType) -> SyncRun:
        run = SyncRun(
            sync_type=sync_type.value,
            status=SyncRunStatus.RUNNING,
            started_at=datetime.now(timezone.utc),
        )
        self.db.add(run)
        self.db.commit()
        self.db.refresh(run)
        return run

    def _finish_run(
        self,
        run: SyncRun,
        status: SyncRunStatus,
        records: int = 0,
        error: Optional[str] = None,
        outcomes: Optional[list[dict]] = None,
    ) -> None:
        run.status = status
        run.records_synced = records
        run.error_message = error
        run.store_outcomes = outcomes
        run.completed_at = datetime.now(timezone.utc)
        self.db.commit()

    def _fail_run(self, run: SyncRun, error: BaseException) -> None:
        self.db.rollback()
        try:
            self._finish_run(run, SyncRunStatus.ERROR, error=str(error) or error.__class__.__name__)
        except Exception as log_error:
            self.db.rollback()
            logger.error("[B2B Sync] Could not record failed sync run %s: %s", run.id, log_error)

    async def run_b2b_sync(self) -> dict:
        """
        Full pull pass over every configured store. Per-store fetch failures are tolerated and
        recorded in store_outcomes; anything else marks the run as error and propagates.
        """
        client = self.client or B2BClient()
        if not client.auth.is_configured():
            raise NotConfiguredError("B2B credentials not configured (SPEC_B2B_USERNAME, SPEC_B2B_PASSWORD)")

        started = time.monotonic()
        run = self._start_run(SyncType.B2B_PULL)
        new_shipments: list[str] = []
        try:
            data = await client.fetch_all_stores_data()

            shipments_upserted = 0
            for s in data.shipments:
                values = map_portal_shipment(s)
                if values is None:
                    continue
                if not self.shipment_exists(values["shipment_id"]):
                    new_shipments.append(
                        f"{s.get('store')}: {values['shipment_id']} "
                        f"(PO: {s.get('custPONumber') or '-'}, ${s.get('shippedTotal') or 0})"
                    )
                self.upsert_shipment(values)
                shipments_upserted += 1

            orders_upserted = 0
            for o in data.orders:
                values = map_portal_order(o)
                if values is None:
                    continue
                self.upsert_order(values)
                orders_upserted += 1

            total = shipments_upserted + orders_upserted
            outcomes = [outcome.to_dict() for outcome in data.outcomes]
            self._finish_run(run, SyncRunStatus.SUCCESS, records=total, outcomes=outcomes)
        except BaseException as e:
            # includes cancellation when the request time budget runs out
            logger.exception("[B2B Sync] Sync failed")
            self._fail_run(run, e)
            raise

        failed_stores = [o.store for o in data.outcomes if not o.ok]
        if failed_stores:
            logger.warning("[B2B Sync] Completed with fetch errors for: %s", ", ".join(failed_stores))

        if new_shipments:
            await self._notify_new_shipments(new_shipments)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "[B2B Sync] %s shipments, %s orders synced in %sms (%s new shipments)",
            shipments_upserted, orders_upserted, duration_ms, len(new_shipments),
        )
        return {
            "shipments": shipments_upserted,
            "orders": orders_upserted,
            "total": total,
            "stores": {o.store: {"shipments": o.shipments, "orders": o.orders} for o in data.outcomes},
            "duration_ms": duration_ms,
        }

    async def _notify_new_shipments(self, lines: list[str]) -> None:
        text = f"Specialized new shipments ({len(lines)})\n" + "\n".join(lines)
        try:
            delivered = await self.notifier.notify_admins(text)
            logger.info("[B2B Sync] Notified %s admins about %s new shipments", delivered, len(lines))
        except Exception as e:
            logger.warning("[B2B Sync] New shipment notification failed: %s", e)

    def apply_pushed_batch(self, payload: dict) -> dict:
        """Upsert a pushed batch; only the collections present in the payload appear in the summary."""
        run = self._start_run(SyncType.PUSH)
        summary: dict[str, int] = {}
        total = 0
        try:
            batches = (
                ("shipments", map_pushed_shipment, self.upsert_shipment),
                ("orders", map_pushed_order, self.upsert_order),
                ("pending_orders", map_pushed_pending_order, self.upsert_pending_order),
            )
            for name, mapper, upsert in batches:
                records = payload.get(name)
                if not isinstance(records, list) or not records:
                    continue
                count = 0
                for record in records:
                    values = mapper(record) if isinstance(record, dict) else None
                    if values is None:
                        continue
                    upsert(values)
                    count += 1
                summary[name] = count
                total += count
            self._finish_run(run, SyncRunStatus.SUCCESS, records=total)
        except Exception as e:
            logger.exception("[B2B Sync] Pushed batch failed")
            self._fail_run(run, e)
            raise
        logger.info("[B2B Sync] Pushed batch applied: %s", summary)
        return {**summary, "total": total}

    def get_sync_history(self, limit: int = 20) -> list:
        """Most recent sync runs, newest first."""
        runs = self.db.query(SyncRun).order_by(SyncRun.started_at.desc()).limit(limit).all()
        return [
            {
                "id": run.id,
                "syncType": run.sync_type,
                "status": run.status.value if run.status else None,
                "recordsSynced": run.records_synced or 0,
                "errorMessage": run.error_message,
                "storeOutcomes": run.store_outcomes or [],
                "startedAt": run.started_at.isoformat() if run.started_at else None,
                "completedAt": run.completed_at.isoformat() if run.completed_at else None,
            }
            for run in runs
        ]
