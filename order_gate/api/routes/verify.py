"""
Order verification API: verify, session check/refresh/logout, window status.
Every denial carries the same generic message unless the reason is meant to
be shown (expired window, device limit).
"""
from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from order_gate.api.deps import get_session_id, require_admin, set_device_cookie
from order_gate.core.config import settings
from order_gate.db.session import get_db
from order_gate.services.cleanup.service import CleanupService
from order_gate.services.devices.identity import resolve_device_id
from order_gate.services.orders.service import OrderService, is_valid_order_number
from order_gate.services.ratelimit.service import get_client_ip, verify_rate_limit
from order_gate.services.sessions.store import SessionStore, get_session_store
from order_gate.services.verification.models import VerificationRequest
from order_gate.services.verification.service import VerificationService
from order_gate.utils.time import to_utc_z

router = APIRouter(prefix="/api/verify", tags=["verify"])


class VerifyBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_number: str | None = Field(None, alias="orderNumber")
    device_id: str | None = Field(None, alias="deviceId")


@router.post("", dependencies=[Depends(verify_rate_limit)])
def verify_order(
    request: Request,
    response: Response,
    body: VerifyBody | None = None,
    db: Session = Depends(get_db),
    sessions: SessionStore = Depends(get_session_store),
    session_id: str | None = Depends(get_session_id),
):
    body = body or VerifyBody()
    device_id, _ = resolve_device_id(
        cookie=request.cookies.get(settings.device_cookie_name),
        body=body.device_id,
        query=request.query_params.get("deviceId"),
        header=request.headers.get("X-Device-ID"),
    )
    order_number = body.order_number.strip() if body.order_number else None
    decision = VerificationService(db, sessions).verify(
        VerificationRequest(
            order_number=order_number,
            ip_address=get_client_ip(request),
            user_agent=request.headers.get("user-agent", ""),
            device_id=device_id,
            session_id=session_id,
        )
    )
    if decision.device_id_minted and decision.device_id:
        set_device_cookie(response, decision.device_id)
    return {"success": decision.granted, **decision.to_response()}


@router.get("/session")
def session_info(
    request: Request,
    sessions: SessionStore = Depends(get_session_store),
    session_id: str | None = Depends(get_session_id),
):
    if not session_id:
        return {"success": False, "message": "No session id provided"}
    if not sessions.validate(session_id, get_client_ip(request)):
        return {"success": False, "message": "Session is invalid or expired"}
    record = sessions.get(session_id)
    if record is None:
        return {"success": False, "message": "Session is invalid or expired"}
    return {
        "success": True,
        "session": {
            "orderNumber": record.order_number,
            "createdAt": to_utc_z(record.created_at),
            "lastAccessedAt": to_utc_z(record.last_accessed_at),
        },
    }


@router.get("/status")
def session_status(
    request: Request,
    sessions: SessionStore = Depends(get_session_store),
    session_id: str | None = Depends(get_session_id),
):
    if not session_id:
        return {"success": False, "valid": False, "message": "No session id provided"}
    if not sessions.validate(session_id, get_client_ip(request)):
        return {"success": False, "valid": False, "message": "Session is invalid or expired"}
    record = sessions.get(session_id)
    if record is None:
        return {"success": False, "valid": False, "message": "Session is invalid or expired"}
    return {
        "success": True,
        "valid": True,
        "sessionId": session_id,
        "sessionExpiresAt": to_utc_z(sessions.expires_at(record)),
        "orderNumber": record.order_number,
    }


@router.post("/refresh")
def refresh_session(
    request: Request,
    sessions: SessionStore = Depends(get_session_store),
    session_id: str | None = Depends(get_session_id),
):
    """Touches last access only; the expiry stays anchored at session creation."""
    if not session_id:
        return {"success": False, "message": "No session id provided"}
    record = sessions.refresh(session_id, get_client_ip(request))
    if record is None:
        return {"success": False, "message": "Session is invalid or expired"}
    return {
        "success": True,
        "message": "Session refreshed",
        "sessionExpiresAt": to_utc_z(sessions.expires_at(record)),
    }


@router.post("/logout")
def logout(
    sessions: SessionStore = Depends(get_session_store),
    session_id: str | None = Depends(get_session_id),
):
    if session_id:
        sessions.remove(session_id)
    return {"success": True, "message": "Logged out"}


@router.get("/window/{order_number}")
def window_status(order_number: str, db: Session = Depends(get_db)):
    if not is_valid_order_number(order_number):
        return {"success": False, "message": "Invalid order number format"}
    service = OrderService(db)
    kind = service.classify(order_number)
    status = service.get_window_status(order_number)
    return {
        "success": True,
        "orderNumber": order_number,
        "orderType": kind.kind,
        "windowStatus": {
            "hasWindow": status["has_window"],
            "expired": status["expired"],
            "firstAccessedAt": to_utc_z(status.get("first_accessed_at")),
            "expiresAt": to_utc_z(status.get("expires_at")),
            "remainingHours": status.get("remaining_hours"),
        },
    }


@router.post("/cleanup", dependencies=[Depends(require_admin)])
def cleanup(
    db: Session = Depends(get_db),
    sessions: SessionStore = Depends(get_session_store),
):
    result = CleanupService(db, sessions).run()
    return {"success": True, **result}
