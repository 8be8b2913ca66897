"""
OrderService: usage ledger, order classification, multi-use whitelist.

The usage ledger is append-only: consumption counts are derived by counting
rows (see usage_count), never maintained as a separate counter.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import DateTime, String, Text, delete, func, literal, select, update
from sqlalchemy.orm import Session

from order_gate.core.config import settings
from order_gate.db.dialect import dialect_insert
from order_gate.db.session import run_with_retry
from order_gate.errors import DenialReason, OrderFormatError
from order_gate.models.access_window import AccessWindow
from order_gate.models.device_binding import DeviceBinding
from order_gate.models.multi_order import MultiOrder
from order_gate.models.order_usage import OrderUsage
from order_gate.services.orders.models import (
    UNLIMITED,
    AccessWindowState,
    MultiOrderKind,
    OrderKind,
    SingleOrderKind,
)
from order_gate.utils.metrics import order_usage_recorded_total, sweep_removed_total
from order_gate.utils.time import Clock, as_utc, utcnow

logger = logging.getLogger(__name__)

ORDER_NUMBER_RE = re.compile(r"^[A-Z][0-9]{18}$")


def is_valid_order_number(value: Any) -> bool:
    return isinstance(value, str) and ORDER_NUMBER_RE.fullmatch(value) is not None


def validate_order_number(value: Any) -> str:
    if not is_valid_order_number(value):
        raise OrderFormatError("invalid order number")
    return value


def _window_state(window: AccessWindow) -> AccessWindowState:
    return AccessWindowState(
        first_accessed_at=as_utc(window.first_accessed_at),
        expires_at=as_utc(window.expires_at),
    )


class OrderService:
    def __init__(self, db: Session, clock: Clock = utcnow, window_hours: int | None = None):
        self.db = db
        self.clock = clock
        self.window = timedelta(hours=window_hours or settings.access_window_hours)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_multi_order(self, order_number: str) -> MultiOrder | None:
        return self.db.query(MultiOrder).filter(MultiOrder.order_number == order_number).one_or_none()

    def get_access_window(self, order_number: str) -> AccessWindow | None:
        return (
            self.db.query(AccessWindow)
            .filter(AccessWindow.order_number == order_number)
            .one_or_none()
        )

    def usage_count(self, order_number: str) -> int:
        """Consumption count for an order. The only place the count is derived."""
        return self.db.execute(
            select(func.count(OrderUsage.id)).where(OrderUsage.order_number == order_number)
        ).scalar_one()

    def classify(self, order_number: str, now: datetime | None = None) -> OrderKind:
        now = now or self.clock()
        multi = self.get_multi_order(order_number)
        if multi is not None:
            return MultiOrderKind(
                max_access=multi.max_access,
                usage_count=self.usage_count(order_number),
            )

        window = self.get_access_window(order_number)
        if window is not None:
            state = _window_state(window)
            if state.is_expired(now):
                return SingleOrderKind(eligible=False, reason=DenialReason.EXPIRED_24H, window=state)
            return SingleOrderKind(eligible=True, window=state)

        # Usage rows without a window predate the window table.
        if self.usage_count(order_number) > 0:
            return SingleOrderKind(eligible=False, reason=DenialReason.LEGACY_USED)
        return SingleOrderKind(eligible=True)

    def remaining_multi_access(self, order_number: str) -> int | str | None:
        """Remaining quota; UNLIMITED when max_access is NULL, None for non-multi orders."""
        multi = self.get_multi_order(order_number)
        if multi is None:
            return None
        if multi.max_access is None:
            return UNLIMITED
        return max(0, multi.max_access - self.usage_count(order_number))

    # ------------------------------------------------------------------
    # Access windows (single-use)
    # ------------------------------------------------------------------

    def create_access_window(self, order_number: str, now: datetime | None = None) -> AccessWindowState:
        """Insert or replace the window row, starting it at now."""
        now = now or self.clock()
        expires_at = now + self.window

        def _op() -> None:
            stmt = dialect_insert(self.db, AccessWindow).values(
                order_number=order_number,
                first_accessed_at=now,
                expires_at=expires_at,
                created_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[AccessWindow.order_number],
                set_={"first_accessed_at": now, "expires_at": expires_at},
            )
            self.db.execute(stmt)
            self.db.commit()

        run_with_retry(self.db, _op)
        logger.info(
            "access_window_created",
            extra={"order_number": order_number, "expires_at": expires_at.isoformat()},
        )
        return AccessWindowState(first_accessed_at=now, expires_at=expires_at)

    def claim_access_window(
        self, order_number: str, now: datetime | None = None
    ) -> tuple[AccessWindowState, bool]:
        """
        Atomically open the window if absent. Exactly one concurrent caller
        gets claimed=True; the others get the winner's window back.
        """
        now = now or self.clock()
        expires_at = now + self.window

        def _op() -> int:
            stmt = (
                dialect_insert(self.db, AccessWindow)
                .values(
                    order_number=order_number,
                    first_accessed_at=now,
                    expires_at=expires_at,
                    created_at=now,
                )
                .on_conflict_do_nothing(index_elements=[AccessWindow.order_number])
            )
            result = self.db.execute(stmt)
            self.db.commit()
            return result.rowcount

        claimed = run_with_retry(self.db, _op) == 1
        if claimed:
            logger.info(
                "access_window_claimed",
                extra={"order_number": order_number, "expires_at": expires_at.isoformat()},
            )
            return AccessWindowState(first_accessed_at=now, expires_at=expires_at), True

        existing = self.get_access_window(order_number)
        if existing is None:
            # Swept between the conflict and the read; report the attempted window.
            return AccessWindowState(first_accessed_at=now, expires_at=expires_at), False
        return _window_state(existing), False

    def get_window_status(self, order_number: str, now: datetime | None = None) -> dict[str, Any]:
        now = now or self.clock()
        window = self.get_access_window(order_number)
        if window is None:
            return {"has_window": False, "expired": False}
        state = _window_state(window)
        return {
            "has_window": True,
            "first_accessed_at": state.first_accessed_at,
            "expires_at": state.expires_at,
            "expired": state.is_expired(now),
            "remaining_hours": round(state.remaining_hours(now), 2),
        }

    def sweep_expired_windows(self, now: datetime | None = None) -> int:
        now = now or self.clock()

        def _op() -> int:
            result = self.db.execute(delete(AccessWindow).where(AccessWindow.expires_at < now))
            self.db.commit()
            return result.rowcount or 0

        removed = run_with_retry(self.db, _op)
        if removed:
            sweep_removed_total.labels(kind="access_window").inc(removed)
        logger.info("access_windows_swept", extra={"count": removed})
        return removed

    # ------------------------------------------------------------------
    # Usage ledger
    # ------------------------------------------------------------------

    def record_usage(
        self,
        order_number: str,
        ip_address: str,
        user_agent: str | None,
        session_id: str | None = None,
        device_id: str | None = None,
        now: datetime | None = None,
    ) -> OrderUsage:
        """Append a consumption row. Unconditional: callers check eligibility first."""
        now = now or self.clock()

        def _op() -> OrderUsage:
            row = OrderUsage(
                order_number=order_number,
                ip_address=ip_address,
                user_agent=user_agent or "",
                device_id=device_id,
                session_id=session_id,
                accessed_at=now,
            )
            self.db.add(row)
            self.db.commit()
            return row

        row = run_with_retry(self.db, _op)
        order_usage_recorded_total.labels(order_type="multi" if session_id else "single").inc()
        return row

    def consume_multi_access(
        self,
        order_number: str,
        max_access: int,
        ip_address: str,
        user_agent: str | None,
        session_id: str | None = None,
        device_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """
        Append a usage row only while the order is under its quota, as a single
        INSERT ... SELECT ... WHERE count < max_access. Returns False when the
        quota was exhausted by the time the statement ran.

        SQLite serializes writers, so the statement alone is enough there. On
        PostgreSQL the whitelist row is locked FOR UPDATE first, in the same
        transaction, so concurrent consumers of one order count in turn.
        """
        now = now or self.clock()
        used = (
            select(func.count(OrderUsage.id))
            .where(OrderUsage.order_number == order_number)
            .correlate(None)
            .scalar_subquery()
        )
        source = select(
            literal(order_number, String),
            literal(ip_address, String),
            literal(user_agent or "", Text),
            literal(device_id, String),
            literal(session_id, String),
            literal(now, DateTime(timezone=True)),
        ).where(used < max_access)
        stmt = OrderUsage.__table__.insert().from_select(
            ["order_number", "ip_address", "user_agent", "device_id", "session_id", "accessed_at"],
            source,
        )
        lock_whitelist_row = self.db.get_bind().dialect.name == "postgresql"

        def _op() -> int:
            if lock_whitelist_row:
                self.db.execute(
                    select(MultiOrder.id).where(MultiOrder.order_number == order_number).with_for_update()
                )
            result = self.db.execute(stmt)
            self.db.commit()
            return result.rowcount

        consumed = run_with_retry(self.db, _op) == 1
        if consumed:
            order_usage_recorded_total.labels(order_type="multi").inc()
        return consumed

    def get_order_usage(self, order_number: str) -> dict[str, Any]:
        multi = self.get_multi_order(order_number)
        rows = (
            self.db.query(OrderUsage)
            .filter(OrderUsage.order_number == order_number)
            .order_by(OrderUsage.accessed_at.desc(), OrderUsage.id.desc())
            .all()
        )
        return {
            "is_multi_order": multi is not None,
            "multi_order_info": (
                {
                    "order_number": multi.order_number,
                    "created_at": as_utc(multi.created_at),
                    "max_access": multi.max_access,
                }
                if multi
                else None
            ),
            "usage_count": len(rows),
            "usage_records": [
                {
                    "ip_address": r.ip_address,
                    "user_agent": r.user_agent,
                    "device_id": r.device_id,
                    "session_id": r.session_id,
                    "accessed_at": as_utc(r.accessed_at),
                }
                for r in rows
            ],
        }

    # ------------------------------------------------------------------
    # Whitelist
    # ------------------------------------------------------------------

    def _insert_multi_order(self, order_number: str, max_access: int | None) -> bool:
        now = self.clock()

        def _op() -> int:
            stmt = (
                dialect_insert(self.db, MultiOrder)
                .values(order_number=order_number, max_access=max_access, created_at=now)
                .on_conflict_do_nothing(index_elements=[MultiOrder.order_number])
            )
            result = self.db.execute(stmt)
            self.db.commit()
            return result.rowcount

        return run_with_retry(self.db, _op) == 1

    def add_multi_order(self, order_number: str, max_access: int | None = None) -> bool:
        """Whitelist an order. Returns False if it already exists."""
        validate_order_number(order_number)
        _validate_max_access(max_access)
        inserted = self._insert_multi_order(order_number, max_access)
        if inserted:
            logger.info("multi_order_added", extra={"order_number": order_number, "remaining": max_access})
        else:
            logger.info("multi_order_exists", extra={"order_number": order_number})
        return inserted

    def batch_add(self, orders: Iterable[tuple[str, int | None]]) -> int:
        """Per-item insert; malformed items are skipped. Returns the number inserted."""
        inserted = 0
        for order_number, max_access in orders:
            if not is_valid_order_number(order_number):
                logger.warning("multi_order_batch_skip", extra={"order_number": str(order_number)[:32]})
                continue
            if max_access is not None and max_access < 1:
                max_access = None
            if self._insert_multi_order(order_number, max_access):
                inserted += 1
        logger.info("multi_order_batch_added", extra={"count": inserted})
        return inserted

    def set_max_access(self, order_number: str, max_access: int | None) -> bool:
        _validate_max_access(max_access)

        def _op() -> int:
            result = self.db.execute(
                update(MultiOrder)
                .where(MultiOrder.order_number == order_number)
                .values(max_access=max_access)
            )
            self.db.commit()
            return result.rowcount

        updated = run_with_retry(self.db, _op) == 1
        if updated:
            logger.info("multi_order_max_access_set", extra={"order_number": order_number, "remaining": max_access})
        return updated

    def delete_order(self, order_number: str) -> bool:
        """
        Remove a whitelist entry with its usage rows, device bindings and any
        window, so the number classifies as a fresh single-use order afterwards.
        """

        def _op() -> int:
            self.db.execute(delete(OrderUsage).where(OrderUsage.order_number == order_number))
            self.db.execute(delete(DeviceBinding).where(DeviceBinding.order_number == order_number))
            self.db.execute(delete(AccessWindow).where(AccessWindow.order_number == order_number))
            result = self.db.execute(delete(MultiOrder).where(MultiOrder.order_number == order_number))
            self.db.commit()
            return result.rowcount

        deleted = run_with_retry(self.db, _op) == 1
        logger.info("multi_order_deleted", extra={"order_number": order_number, "count": int(deleted)})
        return deleted

    def list_multi_orders(
        self, query: str | None = None, page: int = 1, page_size: int = 20
    ) -> tuple[list[dict[str, Any]], int]:
        usage = (
            select(func.count(OrderUsage.id))
            .where(OrderUsage.order_number == MultiOrder.order_number)
            .correlate(MultiOrder)
            .scalar_subquery()
        )
        stmt = select(MultiOrder, usage.label("usage_count"))
        count_stmt = select(func.count(MultiOrder.id))
        if query:
            pattern = f"%{query}%"
            stmt = stmt.where(MultiOrder.order_number.like(pattern))
            count_stmt = count_stmt.where(MultiOrder.order_number.like(pattern))
        total = self.db.execute(count_stmt).scalar_one()
        rows = self.db.execute(
            stmt.order_by(MultiOrder.created_at.desc(), MultiOrder.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        items = []
        for multi, used in rows:
            remaining = (
                UNLIMITED if multi.max_access is None else max(0, multi.max_access - used)
            )
            items.append({
                "order_number": multi.order_number,
                "created_at": as_utc(multi.created_at),
                "max_access": multi.max_access,
                "usage_count": used,
                "remaining_access": remaining,
            })
        return items, total


def _validate_max_access(max_access: int | None) -> None:
    if max_access is not None and (isinstance(max_access, bool) or max_access < 1):
        raise ValueError("max_access must be a positive integer or None")

