"""
Pydantic schemas for request validation (Http/Requests).
"""
from pydantic import BaseModel, Field, validator
from typing import Optional, List

from backoffice.services.erp_service import STORE_CODES


def _required_text(v: str) -> str:
    v = (v or "").strip()
    if not v:
        raise ValueError("must not be empty")
    return v


def _known_store(v: str) -> str:
    v = (v or "").strip()
    if v not in STORE_CODES:
        raise ValueError(f"Unknown store: {v}")
    return v


# ERP Schemas
class ErpOrderRequest(BaseModel):
    phone: str
    memberName: str
    memberId: Optional[str] = None
    productDesc: str
    price: float = Field(..., gt=0)
    orderType: Optional[str] = None
    deliveryDate: Optional[str] = None
    prepay_cash: float = Field(0, ge=0)
    prepay_card: float = Field(0, ge=0)
    prepay_transfer: float = Field(0, ge=0)
    prepay_remit: float = Field(0, ge=0)
    store: str
    staffName: Optional[str] = None
    staffId: Optional[str] = None

    @validator("phone", "memberName", "productDesc")
    def validate_required(cls, v):
        return _required_text(v)

    @validator("store")
    def validate_store(cls, v):
        return _known_store(v)


class ErpRepairRequest(BaseModel):
    phone: str
    memberName: str
    memberId: Optional[str] = None
    repairDesc: str
    estimate: float = Field(0, ge=0)
    prepayment: float = Field(0, ge=0)
    technician: Optional[str] = None
    store: str
    staffName: Optional[str] = None
    staffId: Optional[str] = None

    @validator("phone", "memberName", "repairDesc")
    def validate_required(cls, v):
        return _required_text(v)

    @validator("store")
    def validate_store(cls, v):
        return _known_store(v)


# Specialized Schemas
class PushSyncRequest(BaseModel):
    """Batch posted by the external scraper; records use snake_case column names."""
    shipments: Optional[List[dict]] = None
    orders: Optional[List[dict]] = None
    pending_orders: Optional[List[dict]] = None
