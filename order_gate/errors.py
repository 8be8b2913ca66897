"""
Error taxonomy for the order-access engine.

Validation and policy outcomes are returned as denials, not raised across the
HTTP boundary; StorageError is the only request-scoped failure that escapes a
service call.
"""
from enum import Enum


class DenialReason(str, Enum):
    """Machine-readable reason attached to a denied verification."""

    INVALID_FORMAT = "invalid_format"
    EXPIRED_24H = "expired_24h"
    LEGACY_USED = "legacy_used"
    QUOTA_EXHAUSTED = "quota_exhausted"
    DEVICE_LIMIT_EXCEEDED = "device_limit_exceeded"
    MISSING_DEVICE_ID = "missing_device_id"
    CONCURRENT_CLAIM = "concurrent_claim"
    INTERNAL_ERROR = "internal_error"


class OrderGateError(Exception):
    """Base class for all engine errors."""


class OrderFormatError(OrderGateError, ValueError):
    """Order number is missing or does not match the accepted format."""


class StorageError(OrderGateError):
    """Datastore unavailable, or still busy after the retry budget."""


class PolicyDenial(OrderGateError):
    """A policy check refused the order; carries the denial reason."""

    def __init__(
        self,
        reason: DenialReason,
        message: str | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message or reason.value)
        self.reason = reason
        self.message = message
        self.details = details or {}
