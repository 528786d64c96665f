"""
Specialized B2B routes: pull sync, push sync (shared secret), item matching, sync history.
"""
import hmac
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from backoffice.config import settings
from backoffice.database import get_db
from backoffice.http.requests.schemas import PushSyncRequest
from backoffice.services.b2b_auth import get_auth_bridge
from backoffice.services.b2b_client import B2BClient
from backoffice.services.b2b_sync import SyncEngine
from backoffice.services.exceptions import NotConfiguredError
from backoffice.services.notifications import AdminNotifier
from backoffice.services.product_matching import match_shipment_items

logger = logging.getLogger(__name__)

router = APIRouter()


def get_b2b_client(db: Session = Depends(get_db)) -> B2BClient:
    return B2BClient(auth=get_auth_bridge(db))


def get_notifier() -> AdminNotifier:
    return AdminNotifier()


def verify_sync_key(authorization: Optional[str] = Header(None)) -> None:
    """Shared-secret bearer check for the push endpoint (constant-time comparison)."""
    expected = settings.SYNC_API_KEY
    if not expected:
        raise NotConfiguredError("Sync API not configured")
    token = (authorization or "").strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    if not hmac.compare_digest(token.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/b2b-sync")
async def b2b_sync(
    db: Session = Depends(get_db),
    client: B2BClient = Depends(get_b2b_client),
    notifier: AdminNotifier = Depends(get_notifier),
):
    """Pull shipments and orders for every store from the B2B portal"""
    result = await SyncEngine(db, client=client, notifier=notifier).run_b2b_sync()
    return {"success": True, "data": result}


@router.post("/sync", dependencies=[Depends(verify_sync_key)])
async def push_sync(payload: PushSyncRequest, db: Session = Depends(get_db)):
    """Upsert a batch of shipments, orders and pending orders pushed by an external scraper"""
    result = SyncEngine(db).apply_pushed_batch(payload.dict(exclude_none=True))
    return {"success": True, "data": result}


@router.get("/match-items")
async def match_items(
    shipment_id: str = Query(..., min_length=1),
    db: Session = Depends(get_db),
    client: B2BClient = Depends(get_b2b_client),
):
    """Match a shipment's order line items against local inventory"""
    report = await match_shipment_items(db, shipment_id.strip(), client)
    return {"success": True, "data": report}


@router.get("/sync-history")
async def sync_history(limit: int = Query(20, ge=1, le=200), db: Session = Depends(get_db)):
    """Most recent synchronization runs"""
    return {"success": True, "data": SyncEngine(db).get_sync_history(limit)}
