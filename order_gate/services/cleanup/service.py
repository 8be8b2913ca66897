from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from order_gate.services.devices.service import DeviceLimiter
from order_gate.services.orders.service import OrderService
from order_gate.services.sessions.store import SessionStore
from order_gate.utils.time import Clock, utcnow


class CleanupService:
    """Maintenance sweep: expired windows, expired sessions, stale device bindings."""

    def __init__(self, db: Session, sessions: SessionStore, clock: Clock = utcnow) -> None:
        self.db = db
        self.sessions = sessions
        self.clock = clock

    def run(self, now: datetime | None = None, binding_days: int | None = None) -> dict[str, Any]:
        now = now or self.clock()
        windows = OrderService(self.db, clock=self.clock).sweep_expired_windows(now)
        sessions = self.sessions.sweep_expired(now)
        bindings = DeviceLimiter(self.db, clock=self.clock).sweep_stale_bindings(binding_days, now)
        return {
            "access_windows_removed": windows,
            "sessions_removed": sessions,
            "device_bindings_removed": bindings,
        }
