from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class DeviceReason(str, Enum):
    EXISTING_DEVICE = "existing_device"
    NEW_DEVICE_ALLOWED = "new_device_allowed"
    DEVICE_LIMIT_EXCEEDED = "device_limit_exceeded"
    MISSING_DEVICE_ID = "missing_device_id"


class DeviceDecision(BaseModel):
    """Result of DeviceLimiter.authorize."""

    allowed: bool
    reason: DeviceReason
    current_count: int = 0
    max_devices: int
    remaining_devices: int | None = None  # set for new_device_allowed only

    model_config = {"frozen": True}

    @property
    def is_new_device(self) -> bool:
        return self.reason == DeviceReason.NEW_DEVICE_ALLOWED
