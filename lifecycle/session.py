"""
Subsystem Session Manager
=========================
Owns the connection to the PC/SC subsystem and the single active reader.

Hardware notifications arrive here (on the event loop thread), are
classified, and turned into state changes on the StatePublisher, card
probes, or fatal-error reports for the recovery supervisor.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Callable, Optional, Set

from pcsc.base import PCSCError, Reader, Subsystem, SubsystemListener, SCARD_STATE_UNAWARE
from readers import CardProber, get_hex_string

from .recovery import is_fatal_error
from .state import CardInfo, Severity, StatePublisher
from .status import StatusEvent, interpret_status

logger = logging.getLogger(__name__)


class SubsystemSessionManager(SubsystemListener):
    """Lifetime of the subsystem connection and the active reader handle"""

    def __init__(self, subsystem_factory: Callable[[SubsystemListener], Subsystem],
                 publisher: StatePublisher, hardware_timeout: float = 10.0):
        """
        Args:
            subsystem_factory: Builds a new, unopened Subsystem for a listener
            publisher: Single writer of the observable state
            hardware_timeout: Seconds before a card call counts as failed
        """
        self.subsystem_factory = subsystem_factory
        self.publisher = publisher
        self.hardware_timeout = hardware_timeout
        self.subsystem: Optional[Subsystem] = None
        self.active_reader: Optional[Reader] = None

        # Set by the recovery supervisor
        self.on_fatal_error: Optional[Callable[[str], None]] = None

        self._executor = self._new_executor()
        self._last_mask = SCARD_STATE_UNAWARE
        self._probe_tasks: Set[asyncio.Task] = set()

    async def run_blocking(self, func, *args, timeout: Optional[float] = None):
        """
        Run a blocking function in the thread pool to keep the event loop free.

        Raises:
            asyncio.TimeoutError if the call exceeds the timeout
        """
        timeout = self.hardware_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._executor, partial(func, *args)),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Hardware call {getattr(func, '__name__', func)} timed out after {timeout}s")
            raise

    # Lifecycle ---------------------------------------------------------

    def start(self) -> bool:
        """Open a fresh subsystem connection. Never raises."""
        self._close_subsystem()

        try:
            subsystem = self.subsystem_factory(self)
            subsystem.open()
        except PCSCError as e:
            logger.error(f"Failed to start PC/SC subsystem: {e}")
            return False
        except Exception as e:
            logger.error(f"Unexpected error starting PC/SC subsystem: {e}")
            return False

        self.subsystem = subsystem
        logger.info("PC/SC subsystem started, waiting for readers...")
        return True

    def stop(self):
        """Best-effort teardown of the active reader and the subsystem"""
        reader, self.active_reader = self.active_reader, None
        self._last_mask = SCARD_STATE_UNAWARE
        if reader is not None:
            try:
                reader.close()
            except Exception as e:
                logger.warning(f"Error closing reader {reader}: {e}")
        self._close_subsystem()
        self._replace_executor()

    @staticmethod
    def _new_executor() -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix="nfc_reader")

    def _replace_executor(self):
        """
        Start a fresh worker pool. A worker stuck inside the driver keeps
        its thread; queued calls on the old pool are dropped.
        """
        old, self._executor = self._executor, self._new_executor()
        old.shutdown(wait=False, cancel_futures=True)

    def _close_subsystem(self):
        subsystem, self.subsystem = self.subsystem, None
        if subsystem is None:
            return
        try:
            subsystem.close()
        except Exception as e:
            logger.warning(f"Error closing PC/SC subsystem: {e}")

    async def shutdown(self):
        """Stop everything and wait for in-flight probes to finish"""
        self.stop()
        for task in list(self._probe_tasks):
            task.cancel()
        if self._probe_tasks:
            await asyncio.gather(*self._probe_tasks, return_exceptions=True)
        self._executor.shutdown(wait=False)

    # Subsystem notifications ------------------------------------------

    def reader_attached(self, subsystem: Subsystem, reader: Reader):
        if subsystem is not self.subsystem:
            logger.debug(f"Ignoring reader {reader} from a closed subsystem")
            return

        if self.active_reader is not None and self.active_reader is not reader:
            logger.warning(f"Replacing active reader {self.active_reader} with {reader}")

        self.active_reader = reader
        self._last_mask = SCARD_STATE_UNAWARE
        logger.info(f"Reader connected: {reader.name}")
        self.publisher.reader_attached(reader.name)
        self.publisher.notify(f"Reader connected: {reader.name}", Severity.SUCCESS)

    def subsystem_error(self, subsystem: Subsystem, message: str):
        if subsystem is not self.subsystem:
            logger.debug(f"Ignoring error from a closed subsystem: {message}")
            return
        self._handle_error("PC/SC", message)

    def reader_status(self, reader: Reader, state: int, atr: bytes):
        if reader is not self.active_reader:
            return

        previous, self._last_mask = self._last_mask, state
        event = interpret_status(previous, state)

        if event is StatusEvent.CARD_INSERTED:
            logger.info(f"Card detected, ATR: {get_hex_string(atr)}")
            card_info = self.publisher.card_inserted(atr)
            self.publisher.notify("Card detected", Severity.INFO)
            task = asyncio.ensure_future(self._probe_card(reader, card_info))
            self._probe_tasks.add(task)
            task.add_done_callback(self._probe_tasks.discard)

        elif event is StatusEvent.CARD_REMOVED:
            logger.info("Card removed")
            self.publisher.card_removed()
            self.publisher.notify("Card removed", Severity.INFO)

    def reader_error(self, reader: Reader, message: str):
        if reader is not self.active_reader:
            return
        self._handle_error(f"Reader {reader.name}", message)

    def reader_detached(self, reader: Reader):
        if reader is not self.active_reader:
            return

        self.active_reader = None
        self._last_mask = SCARD_STATE_UNAWARE
        try:
            reader.close()
        except Exception as e:
            logger.warning(f"Error closing reader {reader}: {e}")

        logger.info(f"Reader removed: {reader.name}")
        self.publisher.reader_detached()
        self.publisher.notify(f"Reader disconnected: {reader.name}", Severity.WARNING)

    # Internals ---------------------------------------------------------

    def _handle_error(self, source: str, message: str):
        if is_fatal_error(message):
            self.publisher.notify(f"{source} error: {message}", Severity.ERROR)
            if self.on_fatal_error:
                self.on_fatal_error(message)
        else:
            self.publisher.notify(f"{source} error: {message}", Severity.WARNING)

    async def _probe_card(self, reader: Reader, card_info: CardInfo):
        result = await CardProber(reader, self.run_blocking).probe()

        if not result.connected:
            self.publisher.notify(f"Card connect error: {result.error}", Severity.WARNING)
            return

        self.publisher.apply_probe(card_info, result)

        if result.idm is not None:
            self.publisher.notify(f"FeliCa card read, IDm: {get_hex_string(result.idm)}", Severity.SUCCESS)
        elif result.uid is not None:
            self.publisher.notify(f"Card read, UID: {get_hex_string(result.uid)}", Severity.SUCCESS)
        else:
            self.publisher.notify("Card read complete, no UID or FeliCa response", Severity.INFO)
