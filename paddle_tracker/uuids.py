"""
UUID normalization helpers

BLE stacks report the same identifier in different spellings
("E7F94BB9-9B07-...", "{e7f94bb9-9b07-...}", with trailing NULs).
Identifiers are compared only after normalization.
"""

from typing import Optional


def normalize_uuid(value: Optional[str]) -> str:
    """Lower-case and remove hyphens, braces and NUL terminators."""
    if not value:
        return ""
    return (
        value.lower()
        .replace("-", "")
        .replace("{", "")
        .replace("}", "")
        .replace("\0", "")
    )


def same_uuid(a: Optional[str], b: Optional[str]) -> bool:
    return normalize_uuid(a) == normalize_uuid(b)
