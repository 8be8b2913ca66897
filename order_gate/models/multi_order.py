from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String

from order_gate.db.base import Base


class MultiOrder(Base):
    """Whitelist entry: presence here makes an order multi-use."""

    __tablename__ = "multi_orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(19), unique=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    max_access = Column(Integer, nullable=True)  # NULL = unlimited
