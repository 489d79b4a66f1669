"""
NFC Bridge Configuration
========================
Module-level settings. Every value can be overridden with an
``NFC_BRIDGE_<NAME>`` environment variable.
"""

import os


def _env(name: str, default: str) -> str:
    return os.environ.get(f"NFC_BRIDGE_{name}", default)


# Server
HOST = _env("HOST", "localhost")
PORT = int(_env("PORT", "3005"))

# Logging
LOG_FILE = _env("LOG_FILE", "nfc_bridge.log")
LOG_LEVEL = _env("LOG_LEVEL", "INFO").upper()

# Recovery (seconds)
MAX_REINIT_ATTEMPTS = int(_env("MAX_REINIT_ATTEMPTS", "5"))
BACKOFF_BASE = float(_env("BACKOFF_BASE", "2.0"))
BACKOFF_STEP = float(_env("BACKOFF_STEP", "1.0"))
BACKOFF_CAP = float(_env("BACKOFF_CAP", "10.0"))
RETRY_DELAY = float(_env("RETRY_DELAY", "1.0"))

# Watchdog
WATCHDOG_INTERVAL = float(_env("WATCHDOG_INTERVAL", "30.0"))

# Hardware
POLL_TIMEOUT = float(_env("POLL_TIMEOUT", "0.5"))
HARDWARE_TIMEOUT = float(_env("HARDWARE_TIMEOUT", "10.0"))
