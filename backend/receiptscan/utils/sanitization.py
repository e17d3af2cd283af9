"""
Input sanitization utilities for user edit payloads.
Provides functions to clean free-text values before they are stored.
"""

import re
from typing import Optional


def sanitize_string(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    # Remove leading/trailing whitespace and control characters
    value = value.strip()
    value = re.sub(r'[\x00-\x08\x0B-\x1F\x7F]', '', value)
    # Escape HTML
    value = value.replace('<', '&lt;').replace('>', '&gt;')
    return value


def sanitize_optional(value: Optional[str]) -> Optional[str]:
    """Like :func:`sanitize_string` but maps blank strings to ``None``."""
    value = sanitize_string(value)
    return value or None
