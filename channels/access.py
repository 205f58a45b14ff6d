"""Per-channel sender allow-lists."""

from __future__ import annotations

import string
from collections.abc import Iterable

WILDCARD = "*"

# Only A-Z fold; non-ASCII letters must match exactly
_ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)


def is_allowed(allow_list: Iterable[str], sender: str) -> bool:
    """Return True if ``sender`` may reach the agent.

    A literal ``*`` anywhere in the list allows everyone.  Otherwise an
    entry must equal the sender ignoring ASCII case; no trimming, no
    substring matching.  An empty list denies everyone.
    """
    patterns = list(allow_list)
    if WILDCARD in patterns:
        return True
    folded = sender.translate(_ASCII_LOWER)
    return any(pattern.translate(_ASCII_LOWER) == folded for pattern in patterns)
