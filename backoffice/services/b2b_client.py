"""
Specialized B2B portal data client (OCC REST, bearer token, per-organization scope).
- Shipments: POST /ccstorex/custom/v1/RecentShipment → shipments[]
- Orders:    GET /ccstore/v1/orders?limit=&offset= (paged; a non-2xx page ends paging with partial data)
- Detail:    GET /ccstore/v1/orders/{orderId} → commerceItems[] (non-2xx → None)
Stores are fetched one after another with fixed pacing between pages and between stores.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from backoffice.config import settings
from backoffice.services.b2b_auth import B2BAuthBridge, get_auth_bridge
from backoffice.services.exceptions import B2BRequestError
from backoffice.services.http_client import get_with_retry, post_no_retry
from backoffice.services.rate_limiter import IntervalPacer

logger = logging.getLogger(__name__)

SHIPMENTS_PATH = "/ccstorex/custom/v1/RecentShipment"
ORDERS_PATH = "/ccstore/v1/orders"
PROFILE_TYPE = "storefrontUI"


@dataclass
class LineItem:
    product_id: str
    cat_ref_id: str
    display_name: str
    quantity: int = 1
    raw_total_price: float = 0.0
    unit_price: float = 0.0

    @property
    def reference(self) -> str:
        """Identifier used for matching: catalog reference, else generic product id."""
        return self.cat_ref_id or self.product_id

    def to_dict(self) -> dict:
        return {
            "productId": self.product_id,
            "catRefId": self.cat_ref_id,
            "displayName": self.display_name,
            "quantity": self.quantity,
            "unitPrice": self.unit_price,
            "rawTotalPrice": self.raw_total_price,
        }


@dataclass
class OrderDetail:
    order_id: str
    state: str
    items: list[LineItem] = field(default_factory=list)


@dataclass
class StoreOutcome:
    store: str
    org_id: str
    shipments: int = 0
    orders: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "store": self.store,
            "orgId": self.org_id,
            "shipments": self.shipments,
            "orders": self.orders,
            "ok": self.ok,
            "errors": self.errors,
        }


@dataclass
class StoresData:
    shipments: list[dict] = field(default_factory=list)
    orders: list[dict] = field(default_factory=list)
    outcomes: list[StoreOutcome] = field(default_factory=list)


def _number(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_line_item(raw: dict) -> LineItem:
    """Normalize one commerceItem; the portal uses several names for the same field."""
    quantity = int(_number(raw.get("quantity"), 0)) or 1
    return LineItem(
        product_id=str(raw.get("productId") or ""),
        cat_ref_id=str(raw.get("catRefId") or raw.get("catalogRefId") or ""),
        display_name=str(raw.get("displayName") or raw.get("productDisplayName") or ""),
        quantity=quantity,
        raw_total_price=_number(raw.get("rawTotalPrice")) or _number(raw.get("amount")),
        unit_price=_number(raw.get("unitPrice")) or _number(raw.get("listPrice")),
    )


class B2BClient:
    """Fetches collections scoped to one store (organization) using the auth bridge's token."""

    def __init__(
        self,
        auth: Optional[B2BAuthBridge] = None,
        base_url: Optional[str] = None,
        store_orgs: Optional[dict[str, str]] = None,
        page_size: Optional[int] = None,
        page_pacer: Optional[IntervalPacer] = None,
        store_pacer: Optional[IntervalPacer] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        max_retries: int = 1,
        retry_sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.auth = auth or get_auth_bridge()
        self.base_url = (base_url or settings.B2B_BASE_URL).rstrip("/")
        self.store_orgs = store_orgs if store_orgs is not None else settings.B2B_STORE_ORGS
        self.page_size = page_size or settings.B2B_ORDERS_PAGE_SIZE
        self.page_pacer = page_pacer or IntervalPacer(settings.B2B_PAGE_INTERVAL_SEC)
        self.store_pacer = store_pacer or IntervalPacer(settings.B2B_STORE_INTERVAL_SEC)
        self.transport = transport
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_sleep = retry_sleep or asyncio.sleep

    def _headers(self, token: str, org_id: str) -> dict:
        return {
            "Authorization": f"Bearer {token}",
            "X-CCProfileType": PROFILE_TYPE,
            "X-CCOrganization": str(org_id),
        }

    async def fetch_shipments(self, token: str, org_id: str) -> list[dict]:
        """Recent shipments for one organization. Raises B2BRequestError on non-2xx."""
        headers = self._headers(token, org_id)
        headers["Content-Type"] = "application/json"
        resp = await post_no_retry(
            f"{self.base_url}{SHIPMENTS_PATH}",
            json={},
            headers=headers,
            timeout=self.timeout,
            transport=self.transport,
        )
        if not resp.is_success:
            raise B2BRequestError(
                f"Fetch shipments failed for org {org_id}: {resp.status_code} - {resp.text[:300]}",
                resp.status_code,
                resp.text,
            )
        data = resp.json()
        shipments = data.get("shipments") if isinstance(data, dict) else None
        return shipments if isinstance(shipments, list) else []

    async def fetch_orders(self, token: str, org_id: str) -> list[dict]:
        """
        All orders for one organization, page by page. Best-effort: a non-2xx page
        ends pagination and whatever was collected so far is returned.
        """
        all_orders: list[dict] = []
        offset = 0
        limit = self.page_size
        self.page_pacer.reset()
        while True:
            await self.page_pacer.wait()
            resp = await get_with_retry(
                f"{self.base_url}{ORDERS_PATH}",
                params={"limit": limit, "offset": offset},
                headers=self._headers(token, org_id),
                timeout=self.timeout,
                max_retries=self.max_retries,
                transport=self.transport,
                sleep=self.retry_sleep,
            )
            if not resp.is_success:
                logger.warning("[B2B] Orders page offset=%s for org %s failed: HTTP %s", offset, org_id, resp.status_code)
                break
            data = resp.json()
            items = data.get("items") or [] if isinstance(data, dict) else []
            all_orders.extend(items)
            total = data.get("total") if isinstance(data, dict) else None
            if len(items) < limit or (total is not None and len(all_orders) >= int(total)):
                break
            offset += limit
        return all_orders

    async def fetch_order_detail(self, order_id: str, org_id: str, token: Optional[str] = None) -> Optional[OrderDetail]:
        """Line items of one order, or None when the portal answers non-2xx."""
        token = token or await self.auth.authenticate()
        resp = await get_with_retry(
            f"{self.base_url}{ORDERS_PATH}/{order_id}",
            headers=self._headers(token, org_id),
            timeout=self.timeout,
            max_retries=self.max_retries,
            transport=self.transport,
            sleep=self.retry_sleep,
        )
        if not resp.is_success:
            logger.error("[B2B] Fetch order detail failed for %s: %s", order_id, resp.status_code)
            return None
        data = resp.json() or {}
        items = [parse_line_item(ci) for ci in (data.get("commerceItems") or []) if isinstance(ci, dict)]
        return OrderDetail(order_id=str(data.get("orderId") or order_id), state=data.get("state") or "", items=items)

    async def fetch_all_stores_data(self) -> StoresData:
        """
        Shipments and orders for every configured store, sequentially.
        A failure for one store is logged and recorded in its outcome; the loop continues.
        """
        token = await self.auth.authenticate()
        result = StoresData()
        self.store_pacer.reset()
        for store, org_id in self.store_orgs.items():
            await self.store_pacer.wait()
            outcome = StoreOutcome(store=store, org_id=org_id)

            try:
                shipments = await self.fetch_shipments(token, org_id)
                for s in shipments:
                    result.shipments.append({**s, "store": store, "orgId": org_id})
                outcome.shipments = len(shipments)
            except Exception as e:
                logger.warning("[B2B] Failed to fetch shipments for %s: %s", store, e)
                outcome.errors.append(f"shipments: {e}")

            try:
                orders = await self.fetch_orders(token, org_id)
                for o in orders:
                    result.orders.append({**o, "store": store, "orgId": org_id})
                outcome.orders = len(orders)
            except Exception as e:
                logger.warning("[B2B] Failed to fetch orders for %s: %s", store, e)
                outcome.errors.append(f"orders: {e}")

            result.outcomes.append(outcome)
        return result
