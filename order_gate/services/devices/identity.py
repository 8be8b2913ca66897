"""
Device identity: resolve the client-supplied device id, mint one if absent.
"""
from __future__ import annotations

import re
from uuid import uuid4

UUID4_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_device_id(value: object) -> bool:
    return isinstance(value, str) and UUID4_RE.fullmatch(value) is not None


def generate_device_id() -> str:
    return str(uuid4())


def resolve_device_id(
    cookie: str | None = None,
    body: str | None = None,
    query: str | None = None,
    header: str | None = None,
) -> tuple[str | None, str]:
    """
    Pick the device id by precedence cookie > body > query > header.
    The cookie was set by us and is taken as-is; the other channels must be
    UUID4 strings. Returns (device_id, source) with source "none" when absent.
    """
    if cookie:
        return cookie, "cookie"
    for source, value in (("body", body), ("query", query), ("header", header)):
        if value and is_valid_device_id(value):
            return value, source
    return None, "none"


def resolve_or_mint(
    cookie: str | None = None,
    body: str | None = None,
    query: str | None = None,
    header: str | None = None,
) -> tuple[str, bool]:
    """Like resolve_device_id, minting a fresh id when none is supplied. Returns (device_id, minted)."""
    device_id, _ = resolve_device_id(cookie, body, query, header)
    if device_id:
        return device_id, False
    return generate_device_id(), True
