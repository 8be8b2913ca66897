from fastapi import Header, HTTPException, Query, Response, status

from order_gate.core.config import settings


def require_internal_key(x_internal_api_key: str | None = Header(default=None)) -> None:
    """Whitelist management API: X-Internal-API-Key must match."""
    if not x_internal_api_key or x_internal_api_key != settings.internal_api_key:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")


def require_admin(x_admin_key: str | None = Header(default=None)) -> None:
    if settings.admin_api_key and x_admin_key != settings.admin_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")


def get_session_id(
    x_session_id: str | None = Header(default=None),
    session_id: str | None = Query(default=None, alias="sessionId"),
) -> str | None:
    """Session id from the X-Session-ID header, falling back to ?sessionId=."""
    return x_session_id or session_id


def set_device_cookie(response: Response, device_id: str) -> None:
    response.set_cookie(
        key=settings.device_cookie_name,
        value=device_id,
        max_age=settings.device_cookie_max_age_days * 24 * 3600,
        path="/",
        httponly=True,
        samesite="lax",
        secure=settings.is_production,
    )
