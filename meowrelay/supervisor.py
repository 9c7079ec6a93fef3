"""
Lifecycle Supervisor

Owns the process-wide connection state machine:

    DISCONNECTED -> CONNECTING -> CONNECTED
          ^              |
          +-- failure ---+

Any state moves to TERMINATING on an interrupt signal, end of operator
input, or a session takeover (``StreamReplaced``).  TERMINATING is
absorbing: later connect/reconnect requests are ignored and ``shutdown()``
performs the final disconnect (skipped for an immediate termination).

The supervisor also owns the keepalive failure counter.  More than
``keepalive_threshold`` consecutive keepalive timeouts trigger exactly one
forced disconnect + reconnect; the counter is cleared at that point and on
every ``KeepAliveRestored``.
"""

import asyncio
import logging
import threading
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_KEEPALIVE_THRESHOLD = 3


class LifecycleState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TERMINATING = "terminating"


class LifecycleSupervisor:
    def __init__(self, transport, keepalive_threshold: int = DEFAULT_KEEPALIVE_THRESHOLD) -> None:
        self._transport = transport
        self._threshold = keepalive_threshold
        self._state = LifecycleState.DISCONNECTED
        self._keepalive_failures = 0
        self._counter_lock = threading.Lock()
        self._connect_lock = asyncio.Lock()
        self._terminated = asyncio.Event()
        self._immediate = False
        self._reason = ""
        self._background_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def keepalive_failures(self) -> int:
        with self._counter_lock:
            return self._keepalive_failures

    @property
    def terminating(self) -> bool:
        return self._state is LifecycleState.TERMINATING

    @property
    def termination_reason(self) -> str:
        return self._reason

    # ------------------------------------------------------------------
    # Connect / reconnect
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Initial connect.  Returns ``True`` once connected."""
        async with self._connect_lock:
            return await self._connect()

    async def reconnect(self) -> bool:
        """Disconnect then connect again.  Never raises.

        Connects are serialized, so a forced reconnect and an operator
        reconnect never run against the transport at the same time.
        """
        async with self._connect_lock:
            if self.terminating:
                logger.debug("Reconnect ignored: supervisor is terminating")
                return False
            await self._disconnect_quietly()
            return await self._connect()

    async def _connect(self) -> bool:
        if self.terminating:
            return False
        self._state = LifecycleState.CONNECTING
        try:
            await self._transport.connect()
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to connect: %s", exc)
            if not self.terminating:
                self._state = LifecycleState.DISCONNECTED
            return False
        if self.terminating:
            return False
        self._state = LifecycleState.CONNECTED
        logger.info("Connected")
        return True

    async def _disconnect_quietly(self) -> None:
        try:
            await self._transport.disconnect()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error while disconnecting: %s", exc)
        if not self.terminating:
            self._state = LifecycleState.DISCONNECTED

    # ------------------------------------------------------------------
    # Keepalive accounting
    # ------------------------------------------------------------------

    def record_keepalive_timeout(self) -> bool:
        """Count one keepalive timeout.

        Returns ``True`` if this timeout triggered a forced reconnect.
        """
        with self._counter_lock:
            self._keepalive_failures += 1
            count = self._keepalive_failures
            trigger = count > self._threshold
            if trigger:
                self._keepalive_failures = 0
        logger.debug("Keepalive timeout (%d consecutive)", count)
        if not trigger or self.terminating:
            return False
        logger.debug("Got >%d keepalive timeouts, forcing reconnect", self._threshold)
        self._spawn(self._force_reconnect(), name="keepalive-reconnect")
        return True

    def record_keepalive_restored(self) -> None:
        with self._counter_lock:
            cleared = self._keepalive_failures
            self._keepalive_failures = 0
        logger.debug("Keepalive restored (cleared %d failure(s))", cleared)

    async def _force_reconnect(self) -> None:
        if not await self.reconnect() and not self.terminating:
            logger.error("Error force-reconnecting after keepalive timeouts")

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def terminate(self, reason: str, immediate: bool = False) -> None:
        """Move to TERMINATING.  Idempotent; the first reason wins."""
        if self.terminating:
            return
        self._state = LifecycleState.TERMINATING
        self._reason = reason
        self._immediate = immediate
        logger.info("%s, exiting", reason)
        self._terminated.set()

    async def wait_terminated(self) -> None:
        await self._terminated.wait()

    async def shutdown(self) -> int:
        """Cancel supervisor tasks and disconnect.  Returns the exit code."""
        for task in list(self._background_tasks):
            task.cancel()
        if not self._immediate:
            try:
                await self._transport.disconnect()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Error while disconnecting: %s", exc)
        return 0

    # ------------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------------

    def _spawn(self, coro, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for any in-flight forced reconnects."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
