"""
NFC Card Readers Module
=======================
Fixed card probe for PC/SC readers.

Supported cards:
- ISO 14443 cards (UID via PC/SC GET DATA)
- FeliCa cards such as Suica/Pasmo/ICOCA (IDm/PMm via Polling)
"""

from .apdu import APDU
from .prober import CardProber, ProbeResult
from .utils import get_hex_string

__all__ = [
    'APDU',
    'CardProber',
    'ProbeResult',
    'get_hex_string',
]
