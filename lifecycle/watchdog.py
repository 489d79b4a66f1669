"""
Periodic check that the published reader state matches the handles we hold.

Hardware notifications can be lost (driver hangs, USB resets); without this
check a vanished reader could stay "connected" forever.
"""

import asyncio
import logging
from typing import Optional

from .state import Severity

logger = logging.getLogger(__name__)


class ConsistencyWatchdog:

    def __init__(self, publisher, session, supervisor, interval: float = 30.0,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.publisher = publisher
        self.session = session
        self.supervisor = supervisor
        self.interval = interval
        self._loop = loop
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def running(self) -> bool:
        return self._timer is not None

    def start(self):
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self.stop()
        self._timer = self._loop.call_later(self.interval, self._tick)
        logger.debug(f"Watchdog started, interval {self.interval}s")

    def stop(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _tick(self):
        self._timer = None
        try:
            self.check()
        finally:
            self._timer = self._loop.call_later(self.interval, self._tick)

    def check(self) -> bool:
        """Returns True if a divergence was found and recovery triggered"""
        if not self.publisher.state.reader_connected or self.session.active_reader is not None:
            return False

        logger.warning("Reader marked connected but no reader handle is held")
        self.publisher.clear_reader()
        self.publisher.notify("Reader state out of sync, reconnecting...", Severity.WARNING)
        self.supervisor.trigger("reader state out of sync")
        return True
