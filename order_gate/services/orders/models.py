"""
DTO for order classification: OrderKind is computed once per request and
passed through the verification state machine.
"""
from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from order_gate.errors import DenialReason

# Surfaced instead of a numeric infinity for unlimited multi-use orders.
UNLIMITED = "unlimited"


class AccessWindowState(BaseModel):
    first_accessed_at: datetime
    expires_at: datetime

    model_config = {"frozen": True}

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def remaining_hours(self, now: datetime) -> float:
        return max(0.0, (self.expires_at - now).total_seconds() / 3600)


class SingleOrderKind(BaseModel):
    """Order absent from the whitelist: one 24h access window."""

    kind: Literal["single"] = "single"
    eligible: bool
    reason: DenialReason | None = None
    window: AccessWindowState | None = None

    model_config = {"frozen": True}

    @property
    def is_first_use(self) -> bool:
        return self.eligible and self.window is None


class MultiOrderKind(BaseModel):
    """Whitelisted order: quota of max_access consumptions (None = unlimited)."""

    kind: Literal["multi"] = "multi"
    max_access: int | None = None
    usage_count: int = 0

    model_config = {"frozen": True}

    @property
    def remaining(self) -> int | str:
        if self.max_access is None:
            return UNLIMITED
        return max(0, self.max_access - self.usage_count)

    @property
    def eligible(self) -> bool:
        return self.remaining == UNLIMITED or self.remaining > 0


OrderKind = Annotated[Union[SingleOrderKind, MultiOrderKind], Field(discriminator="kind")]
