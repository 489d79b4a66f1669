"""
PC/SC subsystem backed by pyscard
=================================
Wraps the low-level ``smartcard.scard`` API.

A monitor thread polls SCardListReaders / SCardGetStatusChange on its own
context and hands every notification to the asyncio loop with
``call_soon_threadsafe``. Card sessions use a second context so that
connect/transmit never share a handle with the blocking status wait.
"""

import asyncio
import logging
import threading
from typing import Dict, List, Optional

from smartcard import scard

from .base import (
    PCSCError, Reader, Subsystem, SubsystemListener,
    SCARD_STATE_CHANGED, SCARD_STATE_UNAWARE,
)
from readers.utils import get_hex_string

logger = logging.getLogger(__name__)

# Result codes that mean the resource manager itself is gone
SERVICE_GONE = (
    scard.SCARD_E_NO_SERVICE,
    scard.SCARD_E_SERVICE_STOPPED,
)


def _normalize(hresult: int) -> int:
    return hresult & 0xFFFFFFFF


def error_name(hresult: int) -> Optional[str]:
    """Return the SCARD_* constant name for a result code"""
    code = _normalize(hresult)
    for name, value in vars(scard).items():
        if not name.startswith(("SCARD_E_", "SCARD_W_", "SCARD_F_")):
            continue
        if isinstance(value, int) and _normalize(value) == code:
            return name
    return None


def describe(operation: str, hresult: int) -> str:
    """Build a log/notice friendly message for a failed call"""
    name = error_name(hresult) or "SCARD_UNKNOWN"
    text = scard.SCardGetErrorMessage(hresult)
    return f"{operation} error: {text} ({name}, 0x{_normalize(hresult):08X})"


def check(operation: str, hresult: int):
    """Raise PCSCError unless hresult is SCARD_S_SUCCESS"""
    if hresult != scard.SCARD_S_SUCCESS:
        raise PCSCError(describe(operation, hresult), code=_normalize(hresult), name=error_name(hresult))


class PCSCReader(Reader):
    """Reader handle created by PCSCSubsystem"""

    def __init__(self, subsystem: "PCSCSubsystem", name: str):
        super().__init__(name)
        self.subsystem = subsystem
        self.state = SCARD_STATE_UNAWARE
        self.closed = False
        self._card = None
        self._lock = threading.Lock()

    def connect(self, share_mode: int) -> int:
        with self._lock:
            hresult, card, protocol = scard.SCardConnect(
                self.subsystem.card_context,
                self.name,
                share_mode,
                scard.SCARD_PROTOCOL_T0 | scard.SCARD_PROTOCOL_T1,
            )
            check("SCardConnect", hresult)
            self._card = card
            logger.debug(f"Connected to card on {self.name}, protocol {protocol}")
            return protocol

    def transmit(self, command: bytes, max_length: int, protocol: int) -> bytes:
        with self._lock:
            if self._card is None:
                raise PCSCError("SCardTransmit error: no card session")
            logger.debug(f"APDU >> {get_hex_string(command)}")
            hresult, response = scard.SCardTransmit(self._card, protocol, list(command))
            check("SCardTransmit", hresult)
            response = bytes(response)
            if len(response) > max_length:
                raise PCSCError(
                    f"SCardTransmit error: response of {len(response)} bytes exceeds {max_length}"
                )
            logger.debug(f"APDU << {get_hex_string(response)}")
            return response

    def disconnect(self, disposition: int) -> None:
        with self._lock:
            if self._card is None:
                return
            card, self._card = self._card, None
            check("SCardDisconnect", scard.SCardDisconnect(card, disposition))

    def close(self) -> None:
        """Drop the card session without waiting on a card call in progress"""
        self.closed = True
        if not self._lock.acquire(blocking=False):
            logger.warning(f"Reader {self.name} is busy in a card call, skipping disconnect")
            return
        try:
            card, self._card = self._card, None
            if card is not None:
                hresult = scard.SCardDisconnect(card, scard.SCARD_LEAVE_CARD)
                if hresult != scard.SCARD_S_SUCCESS:
                    logger.warning(f"Error closing reader {self.name}: {describe('SCardDisconnect', hresult)}")
        finally:
            self._lock.release()


class PCSCSubsystem(Subsystem):
    """Connection to the PC/SC resource manager (pcscd / SCardSvr)"""

    def __init__(self, listener: SubsystemListener, loop: Optional[asyncio.AbstractEventLoop] = None,
                 poll_timeout: float = 0.5):
        super().__init__(listener)
        self.loop = loop
        self.poll_timeout = poll_timeout
        self.context = None
        self.card_context = None
        self.readers: Dict[str, PCSCReader] = {}
        self._stopping = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def open(self) -> None:
        if self.loop is None:
            self.loop = asyncio.get_running_loop()

        hresult, context = scard.SCardEstablishContext(scard.SCARD_SCOPE_USER)
        check("SCardEstablishContext", hresult)
        self.context = context

        hresult, card_context = scard.SCardEstablishContext(scard.SCARD_SCOPE_USER)
        if hresult != scard.SCARD_S_SUCCESS:
            scard.SCardReleaseContext(self.context)
            self.context = None
            check("SCardEstablishContext", hresult)
        self.card_context = card_context

        self._stopping.clear()
        self._thread = threading.Thread(target=self._monitor, name="pcsc_monitor", daemon=True)
        self._thread.start()
        logger.info("PC/SC context established")

    def close(self) -> None:
        self._stopping.set()
        if self.context is not None:
            scard.SCardCancel(self.context)
        if self._thread and self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.poll_timeout * 4 + 1)

        for reader in list(self.readers.values()):
            reader.close()
        self.readers.clear()

        for attr in ("card_context", "context"):
            context = getattr(self, attr)
            if context is None:
                continue
            setattr(self, attr, None)
            hresult = scard.SCardReleaseContext(context)
            if hresult != scard.SCARD_S_SUCCESS:
                logger.warning(describe("SCardReleaseContext", hresult))
        logger.info("PC/SC context released")

    def _dispatch(self, callback, *args):
        """Run a listener callback on the event loop thread"""
        try:
            self.loop.call_soon_threadsafe(callback, *args)
        except RuntimeError as e:
            logger.warning(f"Dropping PC/SC event, event loop unavailable: {e}")

    def _list_readers(self) -> Optional[List[str]]:
        hresult, names = scard.SCardListReaders(self.context, [])
        if hresult == scard.SCARD_E_NO_READERS_AVAILABLE:
            return []
        if hresult != scard.SCARD_S_SUCCESS:
            self._dispatch(self.listener.subsystem_error, self, describe("SCardListReaders", hresult))
            return None
        return list(names)

    def _sync_readers(self, names: List[str]):
        for name in names:
            if name not in self.readers:
                reader = PCSCReader(self, name)
                self.readers[name] = reader
                logger.info(f"Reader found: {name}")
                self._dispatch(self.listener.reader_attached, self, reader)

        for name in [n for n in self.readers if n not in names]:
            reader = self.readers.pop(name)
            logger.info(f"Reader removed: {name}")
            reader.closed = True
            self._dispatch(self.listener.reader_detached, reader)

    def _monitor(self):
        timeout_ms = int(self.poll_timeout * 1000)

        while not self._stopping.is_set():
            names = self._list_readers()
            if names is None:
                if self._service_gone():
                    break
                self._stopping.wait(self.poll_timeout)
                continue

            self._sync_readers(names)
            if not self.readers:
                self._stopping.wait(self.poll_timeout)
                continue

            watched = [r for r in self.readers.values() if not r.closed]
            states = [(r.name, r.state) for r in watched]
            hresult, new_states = scard.SCardGetStatusChange(self.context, timeout_ms, states)

            if hresult in (scard.SCARD_E_TIMEOUT, scard.SCARD_E_CANCELLED):
                continue
            if hresult in (scard.SCARD_E_UNKNOWN_READER, scard.SCARD_E_READER_UNAVAILABLE):
                # Reader vanished between list and wait, next pass detaches it
                continue
            if hresult != scard.SCARD_S_SUCCESS:
                message = describe("SCardGetStatusChange", hresult)
                for reader in watched:
                    self._dispatch(self.listener.reader_error, reader, message)
                if hresult in SERVICE_GONE:
                    break
                self._stopping.wait(self.poll_timeout)
                continue

            for name, event_state, atr in new_states:
                reader = self.readers.get(name)
                if reader is None or not event_state & SCARD_STATE_CHANGED:
                    continue
                reader.state = event_state & ~SCARD_STATE_CHANGED
                self._dispatch(self.listener.reader_status, reader, reader.state, bytes(atr))

        if not self._stopping.is_set():
            # Nothing else watches the readers once this thread is gone
            logger.error("PC/SC monitor stopped, smart card service unavailable")
            self._dispatch(
                self.listener.subsystem_error, self,
                "PC/SC monitor stopped: smart card service unavailable"
            )
        logger.debug("PC/SC monitor thread exiting")

    def _service_gone(self) -> bool:
        """Probe whether the resource manager still answers"""
        hresult = scard.SCardIsValidContext(self.context)
        return hresult in SERVICE_GONE or hresult == scard.SCARD_E_INVALID_HANDLE
