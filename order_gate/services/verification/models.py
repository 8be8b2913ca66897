"""
DTO for the verification orchestrator: VerificationRequest (input),
VerificationDecision (output, serialized camelCase by the HTTP layer).
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from order_gate.errors import DenialReason


class VerificationState(str, Enum):
    RECEIVED = "received"
    FORMAT_CHECKED = "format_checked"
    SESSION_SHORT_CIRCUIT = "session_short_circuit"
    CLASSIFIED = "classified"
    DEVICE_AUTHORIZED = "device_authorized"
    CONSUMED = "consumed"
    GRANTED = "granted"
    DENIED = "denied"


class VerificationRequest(BaseModel):
    """Request context supplied by the HTTP layer."""

    order_number: str | None = None
    ip_address: str
    user_agent: str = ""
    device_id: str | None = None  # already resolved cookie > body > query > header
    session_id: str | None = None  # X-Session-ID header or sessionId query

    model_config = {"frozen": True}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class DeviceInfo(_CamelModel):
    is_new_device: bool
    remaining_devices: int | None = None


class AccessWindowInfo(_CamelModel):
    expires_at: datetime
    remaining_hours: float


class DeviceLimitInfo(_CamelModel):
    current: int
    max: int


# Denials whose reason code reaches the client; all others share one generic body.
VISIBLE_REASONS = frozenset(
    {DenialReason.EXPIRED_24H, DenialReason.LEGACY_USED, DenialReason.DEVICE_LIMIT_EXCEEDED}
)


class VerificationDecision(_CamelModel):
    granted: bool
    message: str
    reason: DenialReason | None = None
    order_type: str | None = None
    session_id: str | None = None
    remaining_access: int | str | None = Field(
        None,
        description="Remaining multi-use quota after this grant, or 'unlimited'",
    )
    device_info: DeviceInfo | None = None
    access_window: AccessWindowInfo | None = None
    session_expires_at: datetime | None = None
    device_limit: DeviceLimitInfo | None = None
    # Set when the engine had to mint a device id; the HTTP layer persists it.
    device_id: str | None = Field(None, exclude=True)
    device_id_minted: bool = Field(False, exclude=True)

    def to_response(self) -> dict:
        exclude = None if self.reason in VISIBLE_REASONS else {"reason"}
        return self.model_dump(mode="json", by_alias=True, exclude_none=True, exclude=exclude)
