"""
DeviceLimiter: caps the number of distinct client devices per order.

Device ids are opaque, client-supplied tokens trusted at face value: this is
a soft limiter, not a security boundary. authorize() and bind() are separate
round trips, so two new devices racing on the last free slot can both pass.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from order_gate.core.config import settings
from order_gate.core.logging import short_id
from order_gate.db.dialect import dialect_insert
from order_gate.db.session import run_with_retry
from order_gate.models.device_binding import DeviceBinding
from order_gate.models.multi_order import MultiOrder
from order_gate.services.devices.models import DeviceDecision, DeviceReason
from order_gate.utils.metrics import device_bindings_created_total, sweep_removed_total
from order_gate.utils.time import Clock, as_utc, utcnow

logger = logging.getLogger(__name__)


class DeviceLimiter:
    def __init__(self, db: Session, clock: Clock = utcnow, max_devices: int | None = None):
        self.db = db
        self.clock = clock
        self.max_devices = max_devices or settings.max_devices_per_order

    def get_binding(self, order_number: str, device_id: str) -> DeviceBinding | None:
        return (
            self.db.query(DeviceBinding)
            .filter(DeviceBinding.order_number == order_number, DeviceBinding.device_id == device_id)
            .one_or_none()
        )

    def binding_count(self, order_number: str) -> int:
        return self.db.execute(
            select(func.count(DeviceBinding.id)).where(DeviceBinding.order_number == order_number)
        ).scalar_one()

    def touch(self, order_number: str, device_id: str) -> None:
        now = self.clock()

        def _op() -> None:
            self.db.execute(
                update(DeviceBinding)
                .where(DeviceBinding.order_number == order_number, DeviceBinding.device_id == device_id)
                .values(last_accessed_at=now)
            )
            self.db.commit()

        run_with_retry(self.db, _op)

    def authorize(self, order_number: str, device_id: str | None) -> DeviceDecision:
        if not device_id:
            return DeviceDecision(
                allowed=False,
                reason=DeviceReason.MISSING_DEVICE_ID,
                max_devices=self.max_devices,
            )

        if self.get_binding(order_number, device_id) is not None:
            self.touch(order_number, device_id)
            return DeviceDecision(
                allowed=True,
                reason=DeviceReason.EXISTING_DEVICE,
                current_count=self.binding_count(order_number),
                max_devices=self.max_devices,
            )

        current = self.binding_count(order_number)
        if current >= self.max_devices:
            logger.warning(
                "device_limit_exceeded",
                extra={
                    "order_number": order_number,
                    "device": short_id(device_id),
                    "current_count": current,
                    "max_devices": self.max_devices,
                },
            )
            return DeviceDecision(
                allowed=False,
                reason=DeviceReason.DEVICE_LIMIT_EXCEEDED,
                current_count=current,
                max_devices=self.max_devices,
            )

        return DeviceDecision(
            allowed=True,
            reason=DeviceReason.NEW_DEVICE_ALLOWED,
            current_count=current,
            max_devices=self.max_devices,
            remaining_devices=self.max_devices - current,
        )

    def bind(self, order_number: str, device_id: str) -> bool:
        """
        Insert the (order, device) pair. Idempotent through the unique
        constraint: returns False when the binding already existed.
        """
        now = self.clock()

        def _op() -> int:
            stmt = (
                dialect_insert(self.db, DeviceBinding)
                .values(
                    order_number=order_number,
                    device_id=device_id,
                    created_at=now,
                    last_accessed_at=now,
                )
                .on_conflict_do_nothing(index_elements=[DeviceBinding.order_number, DeviceBinding.device_id])
            )
            result = self.db.execute(stmt)
            self.db.commit()
            return result.rowcount

        created = run_with_retry(self.db, _op) == 1
        if created:
            device_bindings_created_total.inc()
            count = self.binding_count(order_number)
            if count > self.max_devices:
                # authorize() -> bind() is not atomic; surface the overshoot.
                logger.warning(
                    "device_limit_overshoot",
                    extra={"order_number": order_number, "current_count": count, "max_devices": self.max_devices},
                )
            logger.info("device_bound", extra={"order_number": order_number, "device": short_id(device_id)})
        return created

    def list_bindings(self, order_number: str) -> list[dict[str, Any]]:
        rows = (
            self.db.query(DeviceBinding)
            .filter(DeviceBinding.order_number == order_number)
            .order_by(DeviceBinding.last_accessed_at.desc())
            .all()
        )
        return [
            {
                "device_id": b.device_id,
                "created_at": as_utc(b.created_at),
                "last_accessed_at": as_utc(b.last_accessed_at),
            }
            for b in rows
        ]

    def remove_binding(self, order_number: str, device_id: str) -> bool:
        def _op() -> int:
            result = self.db.execute(
                delete(DeviceBinding).where(
                    DeviceBinding.order_number == order_number,
                    DeviceBinding.device_id == device_id,
                )
            )
            self.db.commit()
            return result.rowcount

        removed = run_with_retry(self.db, _op) > 0
        if removed:
            logger.info("device_unbound", extra={"order_number": order_number, "device": short_id(device_id)})
        return removed

    def device_history(self, device_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Orders this device is bound to, newest activity first, with their type."""
        rows = self.db.execute(
            select(DeviceBinding, MultiOrder.order_number, MultiOrder.max_access)
            .outerjoin(MultiOrder, MultiOrder.order_number == DeviceBinding.order_number)
            .where(DeviceBinding.device_id == device_id)
            .order_by(DeviceBinding.last_accessed_at.desc())
            .limit(limit)
        ).all()
        return [
            {
                "order_number": binding.order_number,
                "created_at": as_utc(binding.created_at),
                "last_accessed_at": as_utc(binding.last_accessed_at),
                "order_type": "multi" if multi_number is not None else "single",
                "max_access": max_access if multi_number is not None else None,
            }
            for binding, multi_number, max_access in rows
        ]

    def sweep_stale_bindings(self, days_old: int | None = None, now: datetime | None = None) -> int:
        days = days_old if days_old is not None else settings.device_binding_retention_days
        threshold = (now or self.clock()) - timedelta(days=days)

        def _op() -> int:
            result = self.db.execute(delete(DeviceBinding).where(DeviceBinding.last_accessed_at < threshold))
            self.db.commit()
            return result.rowcount or 0

        removed = run_with_retry(self.db, _op)
        if removed:
            sweep_removed_total.labels(kind="device_binding").inc(removed)
        logger.info("device_bindings_swept", extra={"count": removed})
        return removed
