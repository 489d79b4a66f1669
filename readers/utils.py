"""
Shared utilities for card readers.
"""

from typing import Iterable, Optional

from smartcard.util import toHexString


def get_hex_string(data: Optional[Iterable[int]]) -> str:
    """Convert bytes/list to hex string"""
    if data is None:
        return ""
    return toHexString(list(data))
