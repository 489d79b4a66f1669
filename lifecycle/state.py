"""
Observable reader state and its single writer.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from readers.utils import get_hex_string

logger = logging.getLogger(__name__)


class CardType(Enum):
    """Card families the probe can identify"""
    ISO14443 = "ISO14443"
    FELICA = "FeliCa"
    UNKNOWN = "unknown"


class Severity(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class CardInfo:
    """Last card seen on the reader, filled in as probe steps succeed"""
    atr: bytes = b""
    detected: bool = True
    time_detected: datetime = field(default_factory=datetime.now)
    card_type: CardType = CardType.UNKNOWN
    uid: Optional[bytes] = None
    idm: Optional[bytes] = None
    pmm: Optional[bytes] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict"""
        return {
            "detected": self.detected,
            "atr": get_hex_string(self.atr),
            "time_detected": self.time_detected.isoformat(),
            "type": self.card_type.value,
            "uid": get_hex_string(self.uid) if self.uid is not None else None,
            "idm": get_hex_string(self.idm) if self.idm is not None else None,
            "pmm": get_hex_string(self.pmm) if self.pmm is not None else None,
        }


@dataclass
class ReaderState:
    reader_connected: bool = False
    reader_name: str = ""
    card_present: bool = False
    last_card_info: Optional[CardInfo] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reader_connected": self.reader_connected,
            "reader_name": self.reader_name,
            "card_present": self.card_present,
            "last_card_info": self.last_card_info.to_dict() if self.last_card_info else None,
        }


class StatePublisher:
    """
    Owns the ReaderState and pushes it to observers.

    Every mutation goes through one of the methods below and ends with a
    full-snapshot publish. The channel only needs an ``emit(type, payload)``
    method.
    """

    def __init__(self, channel):
        self.channel = channel
        self.state = ReaderState()

    def publish(self):
        self.channel.emit("statusUpdate", {"state": self.state.to_dict()})

    def notify(self, message: str, severity: Severity = Severity.INFO):
        severity = Severity(severity)
        log = {
            Severity.ERROR: logger.error,
            Severity.WARNING: logger.warning,
        }.get(severity, logger.info)
        log(f"[{severity.value}] {message}")
        self.channel.emit("systemMessage", {"message": message, "severity": severity.value})

    def restart_tip(self, message: str):
        logger.error(f"Service restart required: {message}")
        self.channel.emit("serviceRestartTip", {"message": message})

    # Mutations ---------------------------------------------------------

    def reader_attached(self, name: str):
        self.state.reader_connected = True
        self.state.reader_name = name or "Unknown reader"
        self.publish()

    def reader_detached(self):
        self.state.reader_connected = False
        self.state.reader_name = ""
        self.state.card_present = False
        self.publish()

    def clear_reader(self):
        """Forget reader and card presence, keeping the last card read"""
        self.reader_detached()

    def card_inserted(self, atr: bytes) -> CardInfo:
        card_info = CardInfo(atr=bytes(atr))
        self.state.card_present = True
        self.state.last_card_info = card_info
        self.publish()
        return card_info

    def card_removed(self):
        self.state.card_present = False
        self.publish()

    def apply_probe(self, card_info: CardInfo, result):
        """Write probe results into the CardInfo created for that insertion"""
        if result.uid is not None:
            card_info.uid = result.uid
            card_info.card_type = CardType.ISO14443
        if result.idm is not None:
            card_info.idm = result.idm
            card_info.pmm = result.pmm
            card_info.card_type = CardType.FELICA
        self.publish()
