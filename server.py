"""
NFC Bridge Server
=================
WebSocket server publishing PC/SC card reader state to web applications.

Usage:
    python server.py
    python server.py --host 0.0.0.0 --port 3005 --log-level DEBUG

Environment overrides: NFC_BRIDGE_HOST, NFC_BRIDGE_PORT, NFC_BRIDGE_LOG_FILE, ...
(see config.py)
"""

import argparse
import asyncio
import logging
import sys

import websockets

import config
from bridge import NFCBridge

logger = logging.getLogger(__name__)


def setup_logging(level: str = config.LOG_LEVEL, log_file: str = config.LOG_FILE):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def make_subsystem_factory(loop: asyncio.AbstractEventLoop):
    """Subsystem factory bound to the running loop"""
    from pcsc.pyscard_backend import PCSCSubsystem

    def factory(listener):
        return PCSCSubsystem(listener, loop=loop, poll_timeout=config.POLL_TIMEOUT)

    return factory


async def serve(host: str, port: int):
    loop = asyncio.get_running_loop()
    bridge = NFCBridge(make_subsystem_factory(loop), loop=loop)

    await bridge.start()
    try:
        async with websockets.serve(bridge.handler, host, port):
            logger.info(f"Server listening on ws://{host}:{port}")
            await asyncio.Future()
    finally:
        logger.info("Shutting down...")
        await bridge.stop()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="NFC Bridge Server")
    parser.add_argument("--host", default=config.HOST, help=f"Bind address (default: {config.HOST})")
    parser.add_argument("--port", type=int, default=config.PORT, help=f"Port (default: {config.PORT})")
    parser.add_argument("--log-level", default=config.LOG_LEVEL, help="DEBUG, INFO, WARNING, ERROR")
    parser.add_argument("--log-file", default=config.LOG_FILE, help="Log file ('' to disable)")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    print("=" * 60)
    print("  NFC Bridge Server")
    print("=" * 60)
    print(f"  URL: ws://{args.host}:{args.port}")
    print("  Press Ctrl+C to stop")
    print("=" * 60)

    try:
        asyncio.run(serve(args.host, args.port))
    except KeyboardInterrupt:
        print("\nShutting down...")
    return 0


if __name__ == "__main__":
    sys.exit(main())
