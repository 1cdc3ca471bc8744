"""
Linevault Masking
=================

Partial masking of account fields for public search results.
"""

import math
from typing import Any, Dict, Optional

from .models import AccountRecord


def mask_string(value: Optional[str], ratio: float, min_visible: int = 2) -> str:
    """
    Mask the middle of a string, keeping a visible head and tail.

    Args:
        value: String to mask
        ratio: Share of characters to hide (0 = none, 1 = all)
        min_visible: Minimum number of characters left visible

    Returns:
        Masked string of the same length
    """
    if not value:
        return ""
    if ratio <= 0:
        return value
    if ratio >= 1:
        return "*" * len(value)

    length = len(value)
    visible = max(min_visible, math.floor(length * (1 - ratio)))
    masked = length - visible
    if masked <= 0:
        return value

    head = math.ceil(visible / 2)
    tail = visible - head

    if length <= 4:
        prefix = value[:head]
        suffix = value[length - (visible - len(prefix)):] if visible > len(prefix) else ""
        return prefix + "*" * masked + suffix

    suffix = value[length - tail:] if tail > 0 else ""
    return value[:head] + "*" * masked + suffix


def mask_record(
    record: AccountRecord,
    masking_ratio: float,
    username_masking_ratio: float,
    min_visible: int,
) -> Dict[str, Any]:
    """Masked public view of a parsed record (no raw line)."""
    return {
        "url": mask_string(record.url, masking_ratio, min_visible),
        "username": mask_string(record.username, username_masking_ratio, min_visible),
        "password": mask_string(record.password, masking_ratio, min_visible),
    }
