"""
Recovery Supervisor
===================
Bounded-retry state machine that rebuilds the PC/SC connection when the
subsystem misbehaves.

States:
- IDLE        no recovery in flight
- RECOVERING  connection torn down, (re)start pending or running
- EXHAUSTED   attempts used up, waiting for an operator forced reset

Automatic triggers (fatal errors, watchdog, retries) are dropped while a
recovery is in flight or after exhaustion. Operator requests pre-empt both
guards. All waits are event loop timers; at most one is pending.
"""

import asyncio
import logging
import re
from enum import Enum
from typing import Optional

from .state import Severity, StatePublisher

logger = logging.getLogger(__name__)

# Error messages that mean the subsystem is unusable and must be rebuilt
FATAL_ERROR_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"SCARD_E_NO_SERVICE",
        r"SCARD_E_SERVICE_STOPPED",
        r"resource manager is not running",
        r"service (is )?(unavailable|not available|stopped)",
        r"SCARD_E_TIMEOUT",
        r"time(d)?\s?out",
    )
]

RESTART_TIP = (
    "The card reader could not be recovered automatically. "
    "Restart the smart card service (Windows: 'net stop SCardSvr && net start SCardSvr' "
    "as Administrator; Linux: 'sudo systemctl restart pcscd'), "
    "unplug and reconnect the reader, then press Force Reset."
)


def is_fatal_error(message: str) -> bool:
    """True if an error message matches a known fatal pattern"""
    return any(p.search(message or "") for p in FATAL_ERROR_PATTERNS)


def backoff_delay(attempt: int, base: float = 2.0, step: float = 1.0, cap: float = 10.0) -> float:
    """Delay before restart number ``attempt``: grows linearly, capped"""
    return min(base + attempt * step, cap)


class RecoveryState(Enum):
    IDLE = "idle"
    RECOVERING = "recovering"
    EXHAUSTED = "exhausted"


class RecoverySupervisor:
    """Tears down and recreates the subsystem connection on failure signals"""

    def __init__(self, session, publisher: StatePublisher,
                 loop: Optional[asyncio.AbstractEventLoop] = None,
                 max_attempts: int = 5, retry_delay: float = 1.0,
                 backoff_base: float = 2.0, backoff_step: float = 1.0, backoff_cap: float = 10.0):
        """
        Args:
            session: SubsystemSessionManager (anything with start()/stop())
            publisher: StatePublisher used for state clearing and notices
            loop: Event loop providing call_later (running loop by default)
            max_attempts: Automatic attempts before giving up
            retry_delay: Pause between a failed start and the next trigger
        """
        self.session = session
        self.publisher = publisher
        self._loop = loop
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.backoff_base = backoff_base
        self.backoff_step = backoff_step
        self.backoff_cap = backoff_cap

        self.state = RecoveryState.IDLE
        self.attempts = 0
        self._timer: Optional[asyncio.TimerHandle] = None

        session.on_fatal_error = self.trigger

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def backoff(self, attempt: int) -> float:
        return backoff_delay(attempt, self.backoff_base, self.backoff_step, self.backoff_cap)

    # Entry points ------------------------------------------------------

    def initialize(self) -> bool:
        """First start at boot; a failure hands over to the retry path"""
        if self.session.start():
            self.attempts = 0
            self.publisher.notify("Card reader service started. Waiting for reader...", Severity.INFO)
            return True

        self.publisher.notify("Could not connect to the smart card service", Severity.ERROR)
        self.trigger("initial start failed")
        return False

    def trigger(self, reason: str = "") -> bool:
        """
        Automatic recovery request.

        Returns True if a recovery was started.
        """
        if self.state is RecoveryState.RECOVERING:
            logger.info(f"Recovery already in progress, ignoring trigger: {reason}")
            return False
        if self.state is RecoveryState.EXHAUSTED:
            logger.info(f"Recovery exhausted, ignoring trigger until forced reset: {reason}")
            return False

        if self.attempts >= self.max_attempts:
            self._exhaust()
            return False

        self.attempts += 1
        self._enter_recovering(reason)
        return True

    def manual_reinitialize(self, reason: str = "manual reinitialize requested"):
        """Operator soft request: bypasses the in-flight and exhaustion guards"""
        logger.info(f"Manual reinitialize: {reason}")
        self._cancel_timer()
        self.attempts = min(self.attempts + 1, self.max_attempts)
        self._enter_recovering(reason)

    def force_reset(self, reason: str = "forced reset requested"):
        """Operator full reset: zero the counter and restart immediately"""
        logger.warning(f"Forced reset: {reason}")
        self._cancel_timer()
        self.attempts = 0
        self.state = RecoveryState.RECOVERING
        self._teardown()
        self.publisher.notify("Forcing a full reset of the card reader...", Severity.WARNING)
        self._attempt_start()

    def shutdown(self):
        self._cancel_timer()
        self.session.stop()
        self.state = RecoveryState.IDLE

    # State machine -----------------------------------------------------

    def _enter_recovering(self, reason: str):
        self.state = RecoveryState.RECOVERING
        delay = self.backoff(self.attempts)
        logger.warning(
            f"Recovering reader (attempt {self.attempts}/{self.max_attempts}, "
            f"reason: {reason or 'unspecified'}), restart in {delay:.1f}s"
        )
        self._teardown()
        self.publisher.notify(
            f"Attempting to reconnect to the card reader ({self.attempts}/{self.max_attempts})...",
            Severity.INFO
        )
        self._schedule(delay, self._attempt_start)

    def _teardown(self):
        self.session.stop()
        self.publisher.clear_reader()

    def _attempt_start(self):
        if self.session.start():
            logger.info("Reader subsystem reinitialized")
            self.attempts = 0
            self.state = RecoveryState.IDLE
            self.publisher.notify("Card reader reinitialized successfully", Severity.SUCCESS)
            return

        if self.attempts >= self.max_attempts:
            self._exhaust()
            return

        logger.warning(f"Reinitialize attempt {self.attempts} failed, retrying in {self.retry_delay:.1f}s")
        self.state = RecoveryState.IDLE
        self._schedule(self.retry_delay, self.trigger, "retry after failed restart")

    def _exhaust(self):
        self._cancel_timer()
        self.state = RecoveryState.EXHAUSTED
        logger.error(f"Giving up after {self.attempts} reinitialize attempts")
        self.publisher.notify(
            f"Could not reconnect to the card reader after {self.attempts} attempts",
            Severity.ERROR
        )
        self.publisher.restart_tip(RESTART_TIP)

    def _schedule(self, delay: float, callback, *args):
        self._cancel_timer()
        self._timer = self.loop.call_later(delay, self._fire, callback, *args)

    def _fire(self, callback, *args):
        self._timer = None
        callback(*args)

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
