"""
Product matching: resolve B2B line items to local inventory rows.
Cascade, first hit wins: exact identifier -> partial identifier -> conjunctive name tokens.
An unmatched item is a normal outcome (needs manual reconciliation), not an error.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from backoffice.models import InventoryItem, RemoteOrder, RemoteShipment
from backoffice.services.b2b_client import B2BClient, LineItem
from backoffice.services.exceptions import ShipmentNotFound

logger = logging.getLogger(__name__)

NAME_PUNCTUATION_RE = re.compile(r"[,()/\-]")
MIN_TOKEN_LENGTH = 3
MAX_NAME_TOKENS = 3

EXACT = "exact"
PARTIAL = "partial"
FUZZY = "fuzzy"


def name_tokens(name: str) -> list[str]:
    """First three tokens longer than two characters, punctuation stripped."""
    tokens = NAME_PUNCTUATION_RE.sub(" ", name or "").split()
    return [t for t in tokens if len(t) >= MIN_TOKEN_LENGTH][:MAX_NAME_TOKENS]


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


@dataclass
class MatchResult:
    item: LineItem
    matched: bool = False
    strategy: Optional[str] = None
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    price: float = 0.0
    stores: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = self.item.to_dict()
        data["matched"] = self.matched
        if self.matched:
            data.update({
                "strategy": self.strategy,
                "inv_product_id": self.product_id,
                "inv_product_name": self.product_name,
                "inv_price": self.price,
                "inv_stores": self.stores,
            })
        return data


class ProductMatcher:
    """Cascading lookups against the local inventory table."""

    def __init__(self, db: Session):
        self.db = db

    def _product_query(self):
        return self.db.query(InventoryItem.product_id, InventoryItem.product_name, InventoryItem.price)

    def exact_match(self, reference: str):
        return (
            self._product_query()
            .filter(InventoryItem.product_id == reference)
            .order_by(InventoryItem.store)
            .first()
        )

    def partial_match(self, reference: str):
        return (
            self._product_query()
            .filter(InventoryItem.product_id.ilike(_like_pattern(reference), escape="\\"))
            .order_by(InventoryItem.product_id)
            .first()
        )

    def fuzzy_match(self, display_name: str):
        tokens = name_tokens(display_name)
        if not tokens:
            return None
        conditions = [InventoryItem.product_name.ilike(_like_pattern(t), escape="\\") for t in tokens]
        return (
            self._product_query()
            .filter(and_(*conditions))
            .order_by(InventoryItem.product_id)
            .first()
        )

    def stock_by_store(self, product_id: str) -> list[dict]:
        rows = (
            self.db.query(InventoryItem.store, func.sum(InventoryItem.quantity))
            .filter(InventoryItem.product_id == product_id)
            .group_by(InventoryItem.store)
            .order_by(InventoryItem.store)
            .all()
        )
        return [{"store": store, "quantity": int(quantity or 0)} for store, quantity in rows]

    def match(self, item: LineItem) -> MatchResult:
        reference = item.reference
        row, strategy = None, None
        if reference:
            row, strategy = self.exact_match(reference), EXACT
            if row is None:
                row, strategy = self.partial_match(reference), PARTIAL
        if row is None and item.display_name:
            row, strategy = self.fuzzy_match(item.display_name), FUZZY

        if row is None:
            return MatchResult(item=item)
        product_id, product_name, price = row
        return MatchResult(
            item=item,
            matched=True,
            strategy=strategy,
            product_id=product_id,
            product_name=product_name,
            price=float(price or 0),
            stores=self.stock_by_store(product_id),
        )


def _resolve_order_id(db: Session, po_number: Optional[str]) -> Optional[str]:
    """Local order whose number (or payload orderNumber) is the PO; else the PO itself."""
    if not po_number:
        return None
    row = (
        db.query(RemoteOrder.order_id)
        .filter(or_(
            RemoteOrder.order_number == po_number,
            RemoteOrder.raw_data["orderNumber"].as_string() == po_number,
        ))
        .first()
    )
    return row[0] if row else po_number


async def match_shipment_items(db: Session, shipment_id: str, client: Optional[B2BClient] = None) -> dict:
    """
    Matching report for one shipment: fetch its order's line items from the portal
    and match each against inventory. source tells which step ended the lookup.
    """
    shipment = db.query(RemoteShipment).filter(RemoteShipment.shipment_id == shipment_id).first()
    if not shipment:
        raise ShipmentNotFound(shipment_id)

    client = client or B2BClient()
    raw = shipment.raw_data if isinstance(shipment.raw_data, dict) else {}
    store = shipment.store or raw.get("store")
    org_id = shipment.org_id or raw.get("orgId") or (client.store_orgs.get(store) if store else None)

    report = {
        "shipment_id": shipment_id,
        "po_number": shipment.cust_po_number,
        "order_id": None,
        "items": [],
        "match_count": 0,
        "total_count": 0,
    }
    if not org_id:
        logger.info("[Match] Shipment %s has no organization id", shipment_id)
        return {**report, "source": "no_org_id"}

    order_id = _resolve_order_id(db, shipment.cust_po_number)
    if not order_id:
        return {**report, "source": "no_order_id"}
    report["order_id"] = order_id

    detail = await client.fetch_order_detail(order_id, str(org_id))
    if detail is None or not detail.items:
        return {**report, "source": "no_items"}

    matcher = ProductMatcher(db)
    results = [matcher.match(item) for item in detail.items]
    match_count = sum(1 for r in results if r.matched)
    logger.info("[Match] Shipment %s: %s/%s items matched", shipment_id, match_count, len(results))
    return {
        **report,
        "items": [r.to_dict() for r in results],
        "match_count": match_count,
        "total_count": len(results),
        "source": "b2b_api",
    }
