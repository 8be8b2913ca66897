from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from order_gate.api.deps import require_admin, set_device_cookie
from order_gate.core.config import settings
from order_gate.db.session import get_db
from order_gate.services.devices.identity import resolve_device_id, resolve_or_mint
from order_gate.services.devices.models import DeviceReason
from order_gate.services.devices.service import DeviceLimiter
from order_gate.services.orders.service import is_valid_order_number
from order_gate.utils.time import to_utc_z

router = APIRouter(prefix="/api/device", tags=["device"])


class DeviceValidateIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_number: str = Field(..., alias="orderNumber")
    device_id: str | None = Field(None, alias="deviceId")


def _binding_out(b: dict) -> dict:
    return {
        "deviceId": b["device_id"],
        "createdAt": to_utc_z(b["created_at"]),
        "lastAccessedAt": to_utc_z(b["last_accessed_at"]),
    }


@router.get("/current")
def current_device(request: Request, response: Response):
    """Device id of the caller; mints and sets the cookie when absent."""
    device_id, minted = resolve_or_mint(
        cookie=request.cookies.get(settings.device_cookie_name),
        query=request.query_params.get("deviceId"),
        header=request.headers.get("X-Device-ID"),
    )
    if minted:
        set_device_cookie(response, device_id)
    return {"success": True, "deviceId": device_id, "isNew": minted}


@router.get("/bindings/{order_number}", dependencies=[Depends(require_admin)])
def order_bindings(order_number: str, db: Session = Depends(get_db)):
    if not is_valid_order_number(order_number):
        raise HTTPException(status_code=400, detail="Invalid order number format")
    limiter = DeviceLimiter(db)
    bindings = limiter.list_bindings(order_number)
    return {
        "success": True,
        "orderNumber": order_number,
        "maxDevices": limiter.max_devices,
        "bindings": [_binding_out(b) for b in bindings],
    }


@router.delete("/bindings/{order_number}/{device_id}", dependencies=[Depends(require_admin)])
def remove_binding(order_number: str, device_id: str, db: Session = Depends(get_db)):
    if not DeviceLimiter(db).remove_binding(order_number, device_id):
        raise HTTPException(status_code=404, detail="Binding not found")
    return {"success": True, "message": "Device binding removed"}


@router.get("/history/{device_id}", dependencies=[Depends(require_admin)])
def device_history(device_id: str, db: Session = Depends(get_db), limit: int = Query(50, ge=1, le=500)):
    history = DeviceLimiter(db).device_history(device_id, limit)
    return {
        "success": True,
        "deviceId": device_id,
        "orders": [
            {
                "orderNumber": h["order_number"],
                "orderType": h["order_type"],
                "maxAccess": h["max_access"],
                "createdAt": to_utc_z(h["created_at"]),
                "lastAccessedAt": to_utc_z(h["last_accessed_at"]),
            }
            for h in history
        ],
    }


@router.post("/validate")
def validate_device(payload: DeviceValidateIn, request: Request, db: Session = Depends(get_db)):
    """Dry-run of the device check for an order; binds nothing."""
    if not is_valid_order_number(payload.order_number):
        return {"success": False, "message": "Invalid order number format"}
    device_id, _ = resolve_device_id(
        cookie=request.cookies.get(settings.device_cookie_name),
        body=payload.device_id,
        query=request.query_params.get("deviceId"),
        header=request.headers.get("X-Device-ID"),
    )
    decision = DeviceLimiter(db).authorize(payload.order_number, device_id)
    out = {"success": True, "allowed": decision.allowed, "reason": decision.reason.value}
    if decision.reason == DeviceReason.DEVICE_LIMIT_EXCEEDED:
        out["deviceLimit"] = {"current": decision.current_count, "max": decision.max_devices}
    elif decision.remaining_devices is not None:
        out["remainingDevices"] = decision.remaining_devices
    return out
