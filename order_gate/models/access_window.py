from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String

from order_gate.db.base import Base


class AccessWindow(Base):
    """24h grace period opened by the first verification of a single-use order."""

    __tablename__ = "single_order_access_windows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_number = Column(String(19), unique=True, nullable=False, index=True)
    first_accessed_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
