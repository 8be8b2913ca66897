from fastapi import APIRouter, Depends

from order_gate.api.deps import require_admin
from order_gate.services.sessions.store import SessionStore, get_session_store
from order_gate.utils.time import to_utc_z

router = APIRouter(prefix="/api/session", tags=["session"], dependencies=[Depends(require_admin)])


@router.get("/stats")
def session_stats(sessions: SessionStore = Depends(get_session_store)):
    return {"success": True, "data": sessions.stats()}


@router.get("/active")
def active_sessions(sessions: SessionStore = Depends(get_session_store)):
    items = sessions.list_active()
    return {
        "success": True,
        "data": {
            "total": len(items),
            "sessions": [
                {
                    "sessionId": s["session_id"],
                    "orderNumber": s["order_number"],
                    "clientIP": s["ip_address"],
                    "createdAt": to_utc_z(s["created_at"]),
                    "lastAccessedAt": to_utc_z(s["last_accessed_at"]),
                    "expiresAt": to_utc_z(s["expires_at"]),
                }
                for s in items
            ],
        },
    }


@router.post("/cleanup")
def cleanup_sessions(sessions: SessionStore = Depends(get_session_store)):
    cleaned = sessions.sweep_expired()
    return {"success": True, "message": f"Removed {cleaned} expired sessions", "data": {"cleanedCount": cleaned}}
