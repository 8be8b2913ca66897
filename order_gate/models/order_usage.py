from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String, Text

from order_gate.db.base import Base


class OrderUsage(Base):
    """Append-only consumption log; row counts are the usage counter."""

    __tablename__ = "order_usage"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(19), nullable=False, index=True)
    ip_address = Column(String, nullable=False)
    user_agent = Column(Text, nullable=True)
    device_id = Column(String, nullable=True, index=True)
    session_id = Column(String, nullable=True, index=True)  # set on multi-use rows only
    accessed_at = Column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
        default=lambda: datetime.now(timezone.utc),
    )
