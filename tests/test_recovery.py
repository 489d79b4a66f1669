import asyncio
from unittest.mock import MagicMock

import pytest

from lifecycle import RecoveryState, RecoverySupervisor, backoff_delay, is_fatal_error
from lifecycle.recovery import RESTART_TIP


def make_supervisor(publisher, loop, start_results=None, max_attempts=5):
    session = MagicMock()
    session.start.side_effect = list(start_results) if start_results is not None else None
    session.start.return_value = True
    supervisor = RecoverySupervisor(session, publisher, loop=loop, max_attempts=max_attempts)
    return supervisor, session


def test_registers_itself_for_fatal_errors(publisher, fake_loop):
    supervisor, session = make_supervisor(publisher, fake_loop)
    assert session.on_fatal_error == supervisor.trigger


@pytest.mark.parametrize("message", [
    "SCardListReaders error: Service not available. (SCARD_E_NO_SERVICE, 0x8010001D)",
    "PC/SC error: The Smart card resource manager is not running.",
    "SCardGetStatusChange error: The user-specified timeout value has expired. (SCARD_E_TIMEOUT)",
    "Operation timed out",
])
def test_fatal_patterns(message):
    assert is_fatal_error(message)


@pytest.mark.parametrize("message", [
    "SCardConnect error: Card is unpowered.",
    "SCardTransmit error: Transaction failed.",
    "",
])
def test_non_fatal_patterns(message):
    assert not is_fatal_error(message)


def test_backoff_is_non_decreasing_and_capped():
    delays = [backoff_delay(attempt) for attempt in range(0, 20)]
    assert delays == sorted(delays)
    assert max(delays) == 10.0
    assert backoff_delay(1) == 3.0
    assert backoff_delay(2) == 4.0


def test_trigger_enters_recovering(publisher, channel, fake_loop):
    supervisor, session = make_supervisor(publisher, fake_loop)

    assert supervisor.trigger("SCARD_E_NO_SERVICE")

    assert supervisor.state is RecoveryState.RECOVERING
    assert supervisor.attempts == 1
    session.stop.assert_called_once()
    assert channel.last_state["reader_connected"] is False
    assert "info" in channel.severities()
    [timer] = fake_loop.pending()
    assert timer.delay == backoff_delay(1)
    session.start.assert_not_called()


def test_trigger_dropped_while_recovering(publisher, fake_loop):
    supervisor, session = make_supervisor(publisher, fake_loop)
    supervisor.trigger("first")

    assert not supervisor.trigger("second")

    assert supervisor.attempts == 1
    assert len(fake_loop.pending()) == 1
    assert session.stop.call_count == 1


def test_successful_restart_returns_to_idle(publisher, channel, fake_loop):
    supervisor, session = make_supervisor(publisher, fake_loop, start_results=[True])
    supervisor.trigger("error")

    fake_loop.fire_next()

    assert supervisor.state is RecoveryState.IDLE
    assert supervisor.attempts == 0
    assert channel.severities()[-1] == "success"
    assert not fake_loop.pending()


def test_failed_restart_retries_with_growing_backoff(publisher, fake_loop):
    supervisor, session = make_supervisor(publisher, fake_loop, start_results=[False, False, True])
    supervisor.trigger("error")
    backoffs = [fake_loop.pending()[0].delay]

    fake_loop.fire_next()               # start #1 fails
    assert supervisor.state is RecoveryState.IDLE
    assert fake_loop.pending()[0].delay == supervisor.retry_delay

    fake_loop.fire_next()               # retry trigger
    assert supervisor.attempts == 2
    backoffs.append(fake_loop.pending()[0].delay)

    fake_loop.fire_next()               # start #2 fails
    fake_loop.fire_next()               # retry trigger
    assert supervisor.attempts == 3
    backoffs.append(fake_loop.pending()[0].delay)

    fake_loop.fire_next()               # start #3 succeeds
    assert supervisor.state is RecoveryState.IDLE
    assert supervisor.attempts == 0
    assert backoffs == sorted(backoffs)
    assert backoffs == [3.0, 4.0, 5.0]


def test_five_failed_starts_exhaust(publisher, channel, fake_loop):
    supervisor, session = make_supervisor(publisher, fake_loop, start_results=[False] * 6)
    supervisor.trigger("SCARD_E_NO_SERVICE")

    attempts_seen = []
    while fake_loop.pending():
        fake_loop.fire_next()
        attempts_seen.append(supervisor.attempts)

    assert supervisor.state is RecoveryState.EXHAUSTED
    assert session.start.call_count == 5
    assert max(attempts_seen) == 5
    assert channel.of_type("serviceRestartTip") == [{"message": RESTART_TIP}]
    assert channel.severities()[-1] == "error"


def test_exhausted_ignores_automatic_triggers(publisher, fake_loop):
    supervisor, session = make_supervisor(publisher, fake_loop, start_results=[False] * 5)
    supervisor.trigger("error")
    while fake_loop.pending():
        fake_loop.fire_next()

    assert not supervisor.trigger("watchdog")

    assert supervisor.state is RecoveryState.EXHAUSTED
    assert not fake_loop.pending()
    assert session.start.call_count == 5


@pytest.mark.parametrize("prior", ["idle", "recovering", "exhausted"])
def test_force_reset_from_any_state(publisher, fake_loop, prior):
    supervisor, session = make_supervisor(publisher, fake_loop, start_results=[False] * 5 + [True])
    if prior == "recovering":
        supervisor.trigger("error")
    elif prior == "exhausted":
        supervisor.trigger("error")
        while fake_loop.pending():
            fake_loop.fire_next()
        assert supervisor.state is RecoveryState.EXHAUSTED
    calls_before = session.start.call_count
    session.start.side_effect = None
    session.start.return_value = True

    supervisor.force_reset("operator")

    assert session.start.call_count == calls_before + 1
    assert supervisor.attempts == 0
    assert supervisor.state is RecoveryState.IDLE
    assert not fake_loop.pending()


def test_force_reset_cancels_pending_backoff(publisher, fake_loop):
    supervisor, session = make_supervisor(publisher, fake_loop)
    supervisor.trigger("error")
    [backoff_timer] = fake_loop.pending()
    session.start.return_value = False

    supervisor.force_reset("operator")

    assert backoff_timer.cancelled
    assert supervisor.attempts == 0
    # Failed forced start falls back to the automatic retry path
    [retry_timer] = fake_loop.pending()
    assert retry_timer.delay == supervisor.retry_delay


def test_force_reset_zeroes_counter_before_start(publisher, fake_loop):
    supervisor, session = make_supervisor(publisher, fake_loop)
    supervisor.attempts = 4
    seen = []
    session.start.side_effect = lambda: seen.append(supervisor.attempts) or True

    supervisor.force_reset()

    assert seen == [0]


def test_manual_reinitialize_preempts_in_flight_recovery(publisher, fake_loop):
    supervisor, session = make_supervisor(publisher, fake_loop)
    supervisor.trigger("error")
    [first] = fake_loop.pending()

    supervisor.manual_reinitialize()

    assert first.cancelled
    assert supervisor.state is RecoveryState.RECOVERING
    assert supervisor.attempts == 2
    assert len(fake_loop.pending()) == 1


def test_manual_reinitialize_leaves_exhausted(publisher, fake_loop):
    supervisor, session = make_supervisor(publisher, fake_loop, start_results=[False] * 5 + [True])
    supervisor.trigger("error")
    while fake_loop.pending():
        fake_loop.fire_next()

    supervisor.manual_reinitialize()
    assert supervisor.state is RecoveryState.RECOVERING
    assert supervisor.attempts == supervisor.max_attempts

    fake_loop.fire_next()
    assert supervisor.state is RecoveryState.IDLE
    assert supervisor.attempts == 0


def test_initialize_success(publisher, fake_loop):
    supervisor, session = make_supervisor(publisher, fake_loop, start_results=[True])

    assert supervisor.initialize()

    assert supervisor.state is RecoveryState.IDLE
    assert not fake_loop.pending()


def test_initialize_failure_starts_recovery(publisher, channel, fake_loop):
    supervisor, session = make_supervisor(publisher, fake_loop, start_results=[False])

    assert not supervisor.initialize()

    assert supervisor.state is RecoveryState.RECOVERING
    assert supervisor.attempts == 1
    assert "error" in channel.severities()


def test_shutdown_cancels_timer(publisher, fake_loop):
    supervisor, session = make_supervisor(publisher, fake_loop)
    supervisor.trigger("error")

    supervisor.shutdown()

    assert not fake_loop.pending()
    assert supervisor.state is RecoveryState.IDLE


def test_timers_use_running_loop_by_default(publisher):
    async def scenario():
        supervisor, session = make_supervisor(publisher, loop=None)
        supervisor.trigger("reader vanished")
        assert supervisor.loop is asyncio.get_running_loop()
        assert supervisor.state is RecoveryState.RECOVERING
        supervisor.shutdown()

    asyncio.run(scenario())


def test_event_loop_required_outside_coroutines(publisher):
    supervisor, session = make_supervisor(publisher, loop=None)

    with pytest.raises(RuntimeError):
        supervisor.trigger("reader vanished")
