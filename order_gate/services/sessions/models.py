from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass
class SessionRecord:
    """A live verification session. Bound to exactly one order."""

    session_id: str
    order_number: str
    ip_address: str
    created_at: datetime
    last_accessed_at: datetime
