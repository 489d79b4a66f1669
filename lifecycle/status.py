"""
Raw reader state transitions to card events.
"""

from enum import Enum

from pcsc.base import SCARD_STATE_EMPTY, SCARD_STATE_PRESENT


class StatusEvent(Enum):
    NONE = "none"
    CARD_INSERTED = "card_inserted"
    CARD_REMOVED = "card_removed"


def interpret_status(previous: int, current: int) -> StatusEvent:
    """
    Classify a reader state change.

    Only card presence is monitored; any other bit flipping yields NONE.
    """
    changed = previous ^ current
    if not changed:
        return StatusEvent.NONE

    if changed & SCARD_STATE_PRESENT and current & SCARD_STATE_PRESENT:
        return StatusEvent.CARD_INSERTED
    if changed & SCARD_STATE_EMPTY and current & SCARD_STATE_EMPTY:
        return StatusEvent.CARD_REMOVED

    return StatusEvent.NONE
