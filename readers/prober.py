"""
Card probe: UID read followed by FeliCa polling.
Works with any ISO 14443 / FeliCa card presented to a PC/SC reader (Sony PaSoRi, ACR122U, ...).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from pcsc.base import PCSCError, Reader, SCARD_LEAVE_CARD, SCARD_SHARE_SHARED

from .apdu import APDU
from .utils import get_hex_string

logger = logging.getLogger(__name__)

# Errors a hardware call may end with; both are transport failures for the probe
TRANSPORT_ERRORS = (PCSCError, asyncio.TimeoutError)


@dataclass
class ProbeResult:
    """What one probe cycle learned about the card"""
    connected: bool = False
    protocol: Optional[int] = None
    uid: Optional[bytes] = None
    idm: Optional[bytes] = None
    pmm: Optional[bytes] = None
    error: Optional[str] = None


class CardProber:
    """
    Runs the fixed two-step probe against the card on a reader.

    The steps are independent: a failed UID read still allows FeliCa polling.
    Once connected, the card session is always released in LEAVE_CARD mode.
    """

    def __init__(self, reader: Reader, run_blocking: Callable[..., Awaitable]):
        """
        Args:
            reader: Reader with a card present
            run_blocking: Coroutine function executing a blocking call off the event loop
        """
        self.reader = reader
        self.run_blocking = run_blocking

    async def probe(self) -> ProbeResult:
        result = ProbeResult()

        try:
            result.protocol = await self.run_blocking(self.reader.connect, SCARD_SHARE_SHARED)
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Card connect error on {self.reader}: {e}")
            result.error = str(e) or type(e).__name__
            return result

        result.connected = True
        logger.info(f"Card connected on {self.reader}, protocol: {result.protocol}")

        try:
            for step in (self.read_uid, self.poll_felica):
                try:
                    await step(result)
                except Exception as e:
                    logger.error(f"Card probe step {step.__name__} failed: {e}")
        finally:
            await self.release()

        return result

    async def read_uid(self, result: ProbeResult):
        try:
            response = await self.run_blocking(
                self.reader.transmit, APDU.GET_UID, APDU.MAX_RESPONSE, result.protocol
            )
        except TRANSPORT_ERRORS as e:
            logger.warning(f"UID read failed: {e}")
            return

        logger.info(f"UID response: {get_hex_string(response)}")
        if APDU.is_success(response):
            result.uid = bytes(response[:-2])
            logger.info(f"Card UID: {get_hex_string(result.uid)}")

    async def poll_felica(self, result: ProbeResult):
        try:
            response = await self.run_blocking(
                self.reader.transmit, APDU.FELICA_POLLING, APDU.MAX_RESPONSE, result.protocol
            )
        except TRANSPORT_ERRORS as e:
            logger.warning(f"FeliCa polling error: {e}")
            return

        logger.info(f"FeliCa polling response: {get_hex_string(response)}")
        if len(response) >= APDU.FELICA_MIN_RESPONSE:
            result.idm = bytes(response[APDU.IDM_SLICE])
            result.pmm = bytes(response[APDU.PMM_SLICE])
            logger.info(f"FeliCa IDm: {get_hex_string(result.idm)}")
            logger.info(f"FeliCa PMm: {get_hex_string(result.pmm)}")

    async def release(self):
        try:
            await self.run_blocking(self.reader.disconnect, SCARD_LEAVE_CARD)
            logger.info("Card read complete, session released")
        except TRANSPORT_ERRORS as e:
            logger.warning(f"Card disconnect error: {e}")
