"""
Internal whitelist API for multi-use orders. Requires X-Internal-API-Key.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from order_gate.api.deps import require_internal_key
from order_gate.db.session import get_db
from order_gate.errors import OrderFormatError
from order_gate.services.orders.service import OrderService
from order_gate.services.ratelimit.service import api_rate_limit
from order_gate.utils.time import to_utc_z

router = APIRouter(
    prefix="/api/multi",
    tags=["multi"],
    dependencies=[Depends(api_rate_limit), Depends(require_internal_key)],
)


class MultiOrderIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_number: str = Field(..., alias="orderNumber")
    max_access: int | None = Field(None, alias="maxAccess", ge=1)


class BatchAddIn(BaseModel):
    orders: list[MultiOrderIn] = Field(..., min_length=1)


class MaxAccessIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_access: int | None = Field(None, alias="maxAccess", ge=1)


@router.post("/add")
def add_multi_order(payload: MultiOrderIn, db: Session = Depends(get_db)):
    order_number = payload.order_number.strip()
    try:
        inserted = OrderService(db).add_multi_order(order_number, payload.max_access)
    except OrderFormatError:
        raise HTTPException(status_code=400, detail="Invalid order number format")
    if not inserted:
        return {"success": False, "message": "Order already exists in the whitelist"}
    return {
        "success": True,
        "message": "Multi-use order added",
        "orderNumber": order_number,
        "maxAccess": payload.max_access,
    }


@router.post("/batch-add")
def batch_add(payload: BatchAddIn, db: Session = Depends(get_db)):
    orders = [(o.order_number.strip(), o.max_access) for o in payload.orders]
    inserted = OrderService(db).batch_add(orders)
    return {
        "success": True,
        "message": f"Batch add finished, {inserted} orders added",
        "total": len(orders),
        "inserted": inserted,
        "failed": len(orders) - inserted,
    }


@router.get("/info/{order_number}")
def multi_order_info(order_number: str, db: Session = Depends(get_db)):
    service = OrderService(db)
    usage = service.get_order_usage(order_number.strip())
    if not usage["is_multi_order"]:
        return {"success": False, "message": "Order is not in the multi-use whitelist"}
    info = usage["multi_order_info"]
    return {
        "success": True,
        "orderNumber": info["order_number"],
        "createdAt": to_utc_z(info["created_at"]),
        "maxAccess": info["max_access"],
        "usageCount": usage["usage_count"],
        "remainingAccess": service.remaining_multi_access(order_number.strip()),
        "usageRecords": [
            {
                "ipAddress": r["ip_address"],
                "userAgent": r["user_agent"],
                "deviceId": r["device_id"],
                "sessionId": r["session_id"],
                "accessedAt": to_utc_z(r["accessed_at"]),
            }
            for r in usage["usage_records"]
        ],
    }


@router.get("/list")
def list_multi_orders(
    db: Session = Depends(get_db),
    q: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200, alias="pageSize"),
):
    items, total = OrderService(db).list_multi_orders(q, page, page_size)
    return {
        "success": True,
        "total": total,
        "page": page,
        "pageSize": page_size,
        "orders": [
            {
                "orderNumber": i["order_number"],
                "createdAt": to_utc_z(i["created_at"]),
                "maxAccess": i["max_access"],
                "usageCount": i["usage_count"],
                "remainingAccess": i["remaining_access"],
            }
            for i in items
        ],
    }


@router.put("/{order_number}")
def set_max_access(order_number: str, payload: MaxAccessIn, db: Session = Depends(get_db)):
    if not OrderService(db).set_max_access(order_number, payload.max_access):
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "orderNumber": order_number, "maxAccess": payload.max_access}


@router.delete("/{order_number}")
def delete_multi_order(order_number: str, db: Session = Depends(get_db)):
    if not OrderService(db).delete_order(order_number):
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "message": "Order and its usage records deleted"}
