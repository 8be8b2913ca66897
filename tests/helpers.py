"""Shared test constants and a controllable clock."""
from datetime import datetime, timedelta, timezone

SINGLE_ORDER = "P202401010000000001"
MULTI_ORDER = "M202401010000000002"
UNLIMITED_ORDER = "U202401010000000003"

DEVICE_A = "0f8fad5b-d9cb-469f-a165-70867728950e"
DEVICE_B = "7c9e6679-7425-40de-944b-e07fc1f90ae7"
DEVICE_C = "9b2f3c1e-5a4d-4e8f-b1a2-3c4d5e6f7a8b"
DEVICE_D = "1d2e3f4a-5b6c-4d7e-8f9a-0b1c2d3e4f5a"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now
