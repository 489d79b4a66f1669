"""
Abstract contract for the PC/SC hardware subsystem.
Implement these interfaces to add a new transport (pyscard, simulators, etc.)
"""

from abc import ABC, abstractmethod
from typing import Optional

# Reader state bits (PC/SC dwEventState)
SCARD_STATE_UNAWARE = 0x00
SCARD_STATE_CHANGED = 0x02
SCARD_STATE_EMPTY = 0x10
SCARD_STATE_PRESENT = 0x20

# Share mode / disposition
SCARD_SHARE_SHARED = 2
SCARD_LEAVE_CARD = 0


class PCSCError(Exception):
    """Failure of a PC/SC call"""

    def __init__(self, message: str, code: Optional[int] = None, name: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.name = name


class Reader(ABC):
    """
    Handle to one attached card reader.

    All methods block until the driver answers and raise PCSCError on failure.
    """

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def connect(self, share_mode: int) -> int:
        """Connect to the card on this reader, returns the active protocol"""
        pass

    @abstractmethod
    def transmit(self, command: bytes, max_length: int, protocol: int) -> bytes:
        """Send an APDU, returns the full response including status bytes"""
        pass

    @abstractmethod
    def disconnect(self, disposition: int) -> None:
        """End the card session"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Stop delivering events for this reader"""
        pass

    def __str__(self):
        return self.name


class SubsystemListener(ABC):
    """Receives notifications from a Subsystem and its readers"""

    @abstractmethod
    def reader_attached(self, subsystem: "Subsystem", reader: Reader) -> None:
        pass

    @abstractmethod
    def subsystem_error(self, subsystem: "Subsystem", message: str) -> None:
        pass

    @abstractmethod
    def reader_status(self, reader: Reader, state: int, atr: bytes) -> None:
        pass

    @abstractmethod
    def reader_error(self, reader: Reader, message: str) -> None:
        pass

    @abstractmethod
    def reader_detached(self, reader: Reader) -> None:
        pass


class Subsystem(ABC):
    """
    Connection to the card-reader subsystem (resource manager).

    Notifications are delivered to the listener on the event loop thread.
    """

    def __init__(self, listener: SubsystemListener):
        self.listener = listener

    @abstractmethod
    def open(self) -> None:
        """Establish the connection, raises PCSCError on failure"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the connection and every reader handle"""
        pass
