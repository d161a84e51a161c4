"""Helpers for editing the nested JSON config document."""

from typing import Any


def ensure_object(parent: dict[str, Any], key: str) -> dict[str, Any]:
    """Return ``parent[key]``, replacing a missing or non-object value with ``{}``."""
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
        parent[key] = value
    return value


def split_ids(raw: str | None) -> list[str]:
    """Parse ``"123, 456,,789"`` into ``["123", "456", "789"]``."""
    if not raw:
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]
