"""
PC/SC Hardware Subsystem
========================
Contract for the card-reader subsystem plus its pyscard implementation.

The pyscard backend lives in ``pcsc.pyscard_backend`` and is imported
explicitly by the server so that the rest of the bridge only depends on
the abstract contract.
"""

from .base import (
    PCSCError,
    Reader,
    Subsystem,
    SubsystemListener,
    SCARD_LEAVE_CARD,
    SCARD_SHARE_SHARED,
    SCARD_STATE_CHANGED,
    SCARD_STATE_EMPTY,
    SCARD_STATE_PRESENT,
    SCARD_STATE_UNAWARE,
)

__all__ = [
    'PCSCError',
    'Reader',
    'Subsystem',
    'SubsystemListener',
    'SCARD_LEAVE_CARD',
    'SCARD_SHARE_SHARED',
    'SCARD_STATE_CHANGED',
    'SCARD_STATE_EMPTY',
    'SCARD_STATE_PRESENT',
    'SCARD_STATE_UNAWARE',
]
