"""
Reader Lifecycle
================
Session management, status interpretation, recovery and consistency
checking for a single PC/SC reader.
"""

from .recovery import RecoveryState, RecoverySupervisor, backoff_delay, is_fatal_error
from .session import SubsystemSessionManager
from .state import CardInfo, CardType, ReaderState, Severity, StatePublisher
from .status import StatusEvent, interpret_status
from .watchdog import ConsistencyWatchdog

__all__ = [
    'CardInfo',
    'CardType',
    'ConsistencyWatchdog',
    'ReaderState',
    'RecoveryState',
    'RecoverySupervisor',
    'Severity',
    'StatePublisher',
    'StatusEvent',
    'SubsystemSessionManager',
    'backoff_delay',
    'interpret_status',
    'is_fatal_error',
]
