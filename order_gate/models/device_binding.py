from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint

from order_gate.db.base import Base


class DeviceBinding(Base):
    __tablename__ = "device_bindings"
    __table_args__ = (UniqueConstraint("order_number", "device_id", name="uq_device_binding_order_device"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(19), nullable=False, index=True)
    device_id = Column(String, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    last_accessed_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
