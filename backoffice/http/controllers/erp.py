"""
Legacy ERP routes: member lookup, customer order and repair ticket creation.
"""
import logging
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from backoffice.database import get_db
from backoffice.http.requests.schemas import ErpOrderRequest, ErpRepairRequest
from backoffice.services.erp_service import (
    STORE_CODES,
    ErpService,
    ErpWriteResult,
    OrderData,
    RepairData,
    StaffInfo,
    get_erp_service,
)

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_STORE = "台南"
WRITE_FAILED_MESSAGE = "ERP write failed"


def get_erp(db: Session = Depends(get_db)) -> ErpService:
    return get_erp_service(db)


def _staff(store: str, staff_name, staff_id) -> StaffInfo:
    return StaffInfo(store_code=STORE_CODES[store], employee_name=staff_name or "", employee_id=staff_id or "")


def _write_response(result: ErpWriteResult, number_key: str):
    """LIKELY_FAILED is a failure; CONFIRMED and UNKNOWN succeed with a confirmed flag."""
    data = {number_key: result.number, "outcome": result.outcome.value, "confirmed": result.confirmed}
    if not result.success:
        return JSONResponse(status_code=502, content={"success": False, "error": WRITE_FAILED_MESSAGE, "data": data})
    return {"success": True, "data": data}


@router.get("/member")
async def lookup_member(
    phone: str = Query(..., min_length=1),
    store: str = Query(DEFAULT_STORE),
    erp: ErpService = Depends(get_erp),
):
    """Look up an ERP member by mobile number"""
    store_code = STORE_CODES.get(store, STORE_CODES[DEFAULT_STORE])
    member = await erp.lookup_member(phone.strip(), store_code)
    if not member:
        return {"success": True, "data": None, "message": "Member not found"}
    return {"success": True, "data": member.to_dict()}


@router.post("/order")
async def create_order(request: ErpOrderRequest, erp: ErpService = Depends(get_erp)):
    """Create a customer order in the ERP"""
    order = OrderData(
        phone=request.phone,
        member_name=request.memberName,
        member_id=request.memberId or "",
        product_desc=request.productDesc,
        price=request.price,
        order_type=request.orderType,
        delivery_date=request.deliveryDate,
        prepay_cash=request.prepay_cash,
        prepay_card=request.prepay_card,
        prepay_transfer=request.prepay_transfer,
        prepay_remit=request.prepay_remit,
    )
    result = await erp.create_order(order, _staff(request.store, request.staffName, request.staffId))
    return _write_response(result, "orderNumber")


@router.post("/repair")
async def create_repair(request: ErpRepairRequest, erp: ErpService = Depends(get_erp)):
    """Create a repair ticket in the ERP"""
    repair = RepairData(
        phone=request.phone,
        member_name=request.memberName,
        member_id=request.memberId or "",
        repair_desc=request.repairDesc,
        estimate=request.estimate,
        prepayment=request.prepayment,
        technician=request.technician,
    )
    result = await erp.create_repair(repair, _staff(request.store, request.staffName, request.staffId))
    return _write_response(result, "repairNumber")
