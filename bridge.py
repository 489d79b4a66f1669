"""
NFC Bridge Server - Main WebSocket Server Implementation
========================================================
Pushes card reader state to web clients and accepts operator commands.

Outbound messages:
- statusUpdate       full reader/card snapshot after every change
- systemMessage      one-line advisory with severity (info/success/warning/error)
- serviceRestartTip  remediation guidance once automatic recovery gives up

Inbound messages:
- manualReinitialize  soft reinitialize of the reader subsystem
- forceReinitialize   full reset (timers cancelled, counter zeroed, rebuild now)
- get_status / ping
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional, Set

import websockets

import config
from lifecycle import (
    ConsistencyWatchdog, RecoverySupervisor, StatePublisher, SubsystemSessionManager,
)
from pcsc.base import Subsystem, SubsystemListener

logger = logging.getLogger(__name__)


class NFCBridge:
    """Main NFC Bridge WebSocket Server"""

    VERSION = "3.0.0"

    def __init__(self, subsystem_factory: Callable[[SubsystemListener], Subsystem],
                 loop: Optional[asyncio.AbstractEventLoop] = None,
                 max_attempts: int = config.MAX_REINIT_ATTEMPTS,
                 retry_delay: float = config.RETRY_DELAY,
                 watchdog_interval: float = config.WATCHDOG_INTERVAL,
                 hardware_timeout: float = config.HARDWARE_TIMEOUT):
        """
        Initialize NFC Bridge.

        Args:
            subsystem_factory: Builds the PC/SC subsystem for a listener
            loop: Event loop for timers (the running loop if None)
        """
        self.connected_clients: Set = set()
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._sender_task: Optional[asyncio.Task] = None

        self.publisher = StatePublisher(self)
        self.session = SubsystemSessionManager(
            subsystem_factory, self.publisher, hardware_timeout=hardware_timeout
        )
        self.supervisor = RecoverySupervisor(
            self.session, self.publisher, loop=loop,
            max_attempts=max_attempts, retry_delay=retry_delay,
            backoff_base=config.BACKOFF_BASE, backoff_step=config.BACKOFF_STEP,
            backoff_cap=config.BACKOFF_CAP,
        )
        self.watchdog = ConsistencyWatchdog(
            self.publisher, self.session, self.supervisor,
            interval=watchdog_interval, loop=loop
        )

    # Notification channel ---------------------------------------------

    def emit(self, event_type: str, payload: Dict[str, Any]):
        """Queue a message for every client, preserving order"""
        self._outbox.put_nowait({"type": event_type, **payload})

    async def _send_loop(self):
        while True:
            message = await self._outbox.get()
            try:
                await self.broadcast(message)
            finally:
                self._outbox.task_done()

    async def broadcast(self, message: Dict[str, Any]):
        """Send message to all connected clients"""
        if not self.connected_clients:
            return
        msg = json.dumps(message, ensure_ascii=False)
        for client in list(self.connected_clients):
            try:
                await client.send(msg)
            except websockets.exceptions.ConnectionClosed:
                logger.debug("Dropping closed client")
                self.connected_clients.discard(client)

    # Lifecycle ---------------------------------------------------------

    async def start(self):
        if self._sender_task is None:
            self._sender_task = asyncio.create_task(self._send_loop())
        self.supervisor.initialize()
        self.watchdog.start()

    async def stop(self):
        self.watchdog.stop()
        self.supervisor.shutdown()
        await self.session.shutdown()

        try:
            await asyncio.wait_for(self._outbox.join(), timeout=2.0)
        except asyncio.TimeoutError:
            logger.warning("Pending messages dropped on shutdown")

        if self._sender_task:
            self._sender_task.cancel()
            try:
                await self._sender_task
            except asyncio.CancelledError:
                pass
            self._sender_task = None

    def status_payload(self) -> Dict[str, Any]:
        return {
            "state": self.publisher.state.to_dict(),
            "recovery": {
                "state": self.supervisor.state.value,
                "attempts": self.supervisor.attempts,
                "max_attempts": self.supervisor.max_attempts,
            },
        }

    # WebSocket ---------------------------------------------------------

    async def handle_message(self, websocket, message: str):
        """Handle incoming WebSocket message"""
        try:
            data = json.loads(message)
            if not isinstance(data, dict):
                raise ValueError("Message must be a JSON object")
            msg_type = data.get("type", "")

            logger.info(f"Message: {msg_type}")

            if msg_type == "manualReinitialize":
                self.supervisor.manual_reinitialize("requested by operator")

            elif msg_type == "forceReinitialize":
                self.supervisor.force_reset("requested by operator")

            elif msg_type == "get_status":
                await websocket.send(json.dumps({
                    "type": "statusUpdate",
                    **self.status_payload()
                }, ensure_ascii=False))

            elif msg_type == "ping":
                await websocket.send(json.dumps({"type": "pong"}))

            else:
                await websocket.send(json.dumps({
                    "type": "error",
                    "error": f"Unknown message type: {msg_type}"
                }))

        except json.JSONDecodeError:
            await websocket.send(json.dumps({"type": "error", "error": "Invalid JSON"}))
        except ValueError as e:
            await websocket.send(json.dumps({"type": "error", "error": str(e)}))

    async def handler(self, websocket):
        """Handle WebSocket connection"""
        self.connected_clients.add(websocket)
        logger.info(f"Client connected. Total: {len(self.connected_clients)}")

        try:
            await websocket.send(json.dumps({
                "type": "connected",
                "version": self.VERSION,
                **self.status_payload()
            }, ensure_ascii=False))

            async for message in websocket:
                await self.handle_message(websocket, message)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self.connected_clients.discard(websocket)
            logger.info(f"Client disconnected. Total: {len(self.connected_clients)}")
