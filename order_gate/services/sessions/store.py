"""
In-memory session store for verified orders.

- expiry is fixed at created_at + max_age and never extended by access
- expired entries are dropped lazily on read and by one periodic sweeper
  thread (start/stop), not by per-session timers
- every mutation happens under the store lock
"""
from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable

from order_gate.core.config import settings
from order_gate.core.logging import short_id
from order_gate.services.sessions.models import SessionRecord
from order_gate.utils.metrics import sessions_active, sweep_removed_total
from order_gate.utils.time import Clock, utcnow

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    """64 hex chars, 32 bytes from the OS CSPRNG."""
    return secrets.token_hex(32)


class SessionStore:
    def __init__(
        self,
        max_age_seconds: int | None = None,
        sweep_interval_seconds: float | None = None,
        clock: Clock = utcnow,
        token_factory: Callable[[], str] = generate_session_id,
    ) -> None:
        self.max_age = timedelta(seconds=max_age_seconds or settings.session_max_age_seconds)
        self.sweep_interval = sweep_interval_seconds or settings.session_sweep_interval_seconds
        self.clock = clock
        self.token_factory = token_factory
        self._sessions: dict[str, SessionRecord] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._sweeper_thread: threading.Thread | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._sweeper_thread and self._sweeper_thread.is_alive():
            return
        self._stop_event.clear()
        self._sweeper_thread = threading.Thread(
            target=self._sweep_loop, name="session-sweeper", daemon=True
        )
        self._sweeper_thread.start()
        logger.info("session_sweeper_started", extra={"count": len(self)})

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._sweeper_thread is not None:
            self._sweeper_thread.join(timeout)
            self._sweeper_thread = None
        logger.info("session_sweeper_stopped")

    @property
    def running(self) -> bool:
        return self._sweeper_thread is not None and self._sweeper_thread.is_alive()

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval):
            try:
                self.sweep_expired()
            except Exception:
                logger.exception("session_sweep_failed")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def expires_at(self, record: SessionRecord) -> datetime:
        return record.created_at + self.max_age

    def _is_expired(self, record: SessionRecord, now: datetime) -> bool:
        return now >= self.expires_at(record)

    def _live(self, session_id: str, now: datetime) -> SessionRecord | None:
        """Lookup with lazy expiry. Caller holds the lock."""
        record = self._sessions.get(session_id)
        if record is None:
            return None
        if self._is_expired(record, now):
            del self._sessions[session_id]
            sessions_active.set(len(self._sessions))
            logger.info(
                "session_expired",
                extra={"session": short_id(session_id), "order_number": record.order_number},
            )
            return None
        return record

    def create(self, order_number: str, ip_address: str) -> str:
        now = self.clock()
        session_id = self.token_factory()
        with self._lock:
            self._sessions[session_id] = SessionRecord(
                session_id=session_id,
                order_number=order_number,
                ip_address=ip_address,
                created_at=now,
                last_accessed_at=now,
            )
            sessions_active.set(len(self._sessions))
        logger.info(
            "session_created",
            extra={"session": short_id(session_id), "order_number": order_number, "ip": ip_address},
        )
        return session_id

    def validate(self, session_id: str | None, ip_address: str | None = None) -> bool:
        """
        True iff the session exists and has not expired. Bumps last_accessed_at.
        An IP mismatch is logged, never enforced.
        """
        if not session_id:
            return False
        now = self.clock()
        with self._lock:
            record = self._live(session_id, now)
            if record is None:
                return False
            record.last_accessed_at = now
            bound_ip = record.ip_address
        if ip_address is not None and bound_ip != ip_address:
            logger.warning(
                "session_ip_mismatch",
                extra={"session": short_id(session_id), "expected_ip": bound_ip, "ip": ip_address},
            )
        return True

    def get(self, session_id: str | None) -> SessionRecord | None:
        """Snapshot of a live session, or None."""
        if not session_id:
            return None
        with self._lock:
            record = self._live(session_id, self.clock())
            return replace(record) if record is not None else None

    def refresh(self, session_id: str | None, ip_address: str | None = None) -> SessionRecord | None:
        """Bump last_accessed_at. The expiry stays anchored at created_at."""
        if not self.validate(session_id, ip_address):
            return None
        return self.get(session_id)

    def remove(self, session_id: str | None) -> bool:
        if not session_id:
            return False
        with self._lock:
            record = self._sessions.pop(session_id, None)
            sessions_active.set(len(self._sessions))
        if record is None:
            return False
        logger.info(
            "session_removed",
            extra={"session": short_id(session_id), "order_number": record.order_number},
        )
        return True

    def sweep_expired(self, now: datetime | None = None) -> int:
        now = now or self.clock()
        with self._lock:
            expired = [sid for sid, rec in self._sessions.items() if self._is_expired(rec, now)]
            for sid in expired:
                del self._sessions[sid]
            sessions_active.set(len(self._sessions))
        if expired:
            sweep_removed_total.labels(kind="session").inc(len(expired))
        logger.info("sessions_swept", extra={"count": len(expired)})
        return len(expired)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            by_order: dict[str, int] = {}
            for record in self._sessions.values():
                by_order[record.order_number] = by_order.get(record.order_number, 0) + 1
            return {"total_sessions": len(self._sessions), "sessions_by_order": by_order}

    def list_active(self) -> list[dict[str, Any]]:
        """Admin view; session ids are masked."""
        now = self.clock()
        with self._lock:
            records = [replace(r) for r in self._sessions.values() if not self._is_expired(r, now)]
        return [
            {
                "session_id": short_id(r.session_id),
                "order_number": r.order_number,
                "ip_address": r.ip_address,
                "created_at": r.created_at,
                "last_accessed_at": r.last_accessed_at,
                "expires_at": self.expires_at(r),
            }
            for r in records
        ]


session_store = SessionStore()


def get_session_store() -> SessionStore:
    """FastAPI dependency; override in tests for an isolated store."""
    return session_store
