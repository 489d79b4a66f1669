"""
Pytest configuration and fakes for NFC Bridge tests.
"""

import pytest

from lifecycle import StatePublisher
from pcsc.base import PCSCError, Reader, Subsystem


class FakeChannel:
    """Records everything the publisher emits"""

    def __init__(self):
        self.sent = []

    def emit(self, event_type, payload):
        self.sent.append((event_type, payload))

    def of_type(self, event_type):
        return [payload for kind, payload in self.sent if kind == event_type]

    def severities(self):
        return [payload["severity"] for payload in self.of_type("systemMessage")]

    @property
    def last_state(self):
        updates = self.of_type("statusUpdate")
        return updates[-1]["state"] if updates else None


class FakeTimer:
    def __init__(self, delay, callback, args):
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    """call_later recorder; timers only run when fired by the test"""

    def __init__(self):
        self.timers = []

    def call_later(self, delay, callback, *args):
        timer = FakeTimer(delay, callback, args)
        self.timers.append(timer)
        return timer

    def pending(self):
        return [t for t in self.timers if not t.cancelled]

    def fire_next(self):
        timer = self.pending()[0]
        timer.cancelled = True
        timer.callback(*timer.args)
        return timer


class FakeReader(Reader):
    """
    Scripted reader. ``responses`` maps command bytes to response bytes or
    to an exception instance to raise.
    """

    def __init__(self, name="ReaderX", responses=None, connect_error=None, disconnect_error=None):
        super().__init__(name)
        self.responses = responses or {}
        self.connect_error = connect_error
        self.disconnect_error = disconnect_error
        self.connects = []
        self.transmits = []
        self.disconnects = []
        self.closed = 0

    def connect(self, share_mode):
        self.connects.append(share_mode)
        if self.connect_error:
            raise self.connect_error
        return 2

    def transmit(self, command, max_length, protocol):
        self.transmits.append(bytes(command))
        response = self.responses.get(bytes(command), PCSCError("SCardTransmit error: no response"))
        if isinstance(response, Exception):
            raise response
        return response

    def disconnect(self, disposition):
        self.disconnects.append(disposition)
        if self.disconnect_error:
            raise self.disconnect_error

    def close(self):
        self.closed += 1


class FakeSubsystem(Subsystem):
    def __init__(self, listener, open_error=None, close_error=None):
        super().__init__(listener)
        self.open_error = open_error
        self.close_error = close_error
        self.opened = False
        self.closed = False

    def open(self):
        if self.open_error:
            raise self.open_error
        self.opened = True

    def close(self):
        self.closed = True
        if self.close_error:
            raise self.close_error


class SubsystemFactory:
    """Builds FakeSubsystems; ``failures`` opens fail before one succeeds"""

    def __init__(self, failures=0):
        self.failures = failures
        self.created = []

    def __call__(self, listener):
        error = None
        if self.failures:
            self.failures -= 1
            error = PCSCError("SCardEstablishContext error: Service not available. (SCARD_E_NO_SERVICE)")
        subsystem = FakeSubsystem(listener, open_error=error)
        self.created.append(subsystem)
        return subsystem

    @property
    def latest(self):
        return self.created[-1]


async def direct_call(func, *args, timeout=None):
    """run_blocking stand-in that calls the function inline"""
    return func(*args)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def publisher(channel):
    return StatePublisher(channel)


@pytest.fixture
def fake_loop():
    return FakeLoop()
