"""
Connection lifecycle controller.

Tracks the chat client's pairing/auth/connection status as a small state
machine. The controller is the only writer of ``ConnectionState``; other
components read it through ``get_status()``.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional

from group_monitor.client import ChatClient
from group_monitor.events import (
    AuthFailure,
    Authenticated,
    Disconnected,
    LifecycleEvent,
    PairingRequired,
    Ready,
)
from group_monitor.metrics import record_phase_transition
from group_monitor.utils import utc_now

logger = logging.getLogger(__name__)


class ConnectionPhase(str, Enum):
    INITIALIZING = "Initializing"
    AWAITING_PAIRING = "AwaitingPairing"
    AUTHENTICATED = "Authenticated"
    CONNECTED = "Connected"
    DISCONNECTED = "Disconnected"
    FAILED = "Failed"


ALLOWED_TRANSITIONS: dict[ConnectionPhase, frozenset[ConnectionPhase]] = {
    ConnectionPhase.INITIALIZING: frozenset({
        ConnectionPhase.AWAITING_PAIRING,
        # Restored session, no pairing needed
        ConnectionPhase.AUTHENTICATED,
        ConnectionPhase.CONNECTED,
        ConnectionPhase.FAILED,
    }),
    ConnectionPhase.AWAITING_PAIRING: frozenset({
        ConnectionPhase.AUTHENTICATED,
        ConnectionPhase.FAILED,
        ConnectionPhase.DISCONNECTED,
    }),
    ConnectionPhase.AUTHENTICATED: frozenset({
        ConnectionPhase.CONNECTED,
        ConnectionPhase.DISCONNECTED,
    }),
    ConnectionPhase.CONNECTED: frozenset({
        ConnectionPhase.DISCONNECTED,
    }),
    ConnectionPhase.DISCONNECTED: frozenset({
        ConnectionPhase.AWAITING_PAIRING,
        ConnectionPhase.INITIALIZING,
    }),
    ConnectionPhase.FAILED: frozenset({
        ConnectionPhase.CONNECTED,
    }),
}

# Only reachable without a real transport
_FALLBACK_SOURCES = frozenset({ConnectionPhase.INITIALIZING, ConnectionPhase.FAILED})


class InvalidTransitionError(Exception):
    def __init__(self, current: ConnectionPhase, target: ConnectionPhase):
        super().__init__(f"Invalid connection transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


@dataclass
class ConnectionState:
    phase: ConnectionPhase = ConnectionPhase.INITIALIZING
    pairing_payload: Optional[str] = None
    message_count: int = 0
    fallback: bool = False
    last_error: Optional[str] = None
    started_at: float = field(default_factory=time.monotonic)
    started_at_utc: datetime = field(default_factory=utc_now)

    @property
    def is_ready(self) -> bool:
        return self.phase is ConnectionPhase.CONNECTED


@dataclass(frozen=True)
class ConnectionStatus:
    """Point-in-time snapshot returned by ``ConnectionController.get_status``."""
    phase: ConnectionPhase
    is_ready: bool
    pairing_payload: Optional[str]
    message_count: int
    uptime_seconds: int
    fallback: bool
    last_error: Optional[str]


class ConnectionController:
    """
    Owns the process-wide ``ConnectionState``.

    Lifecycle events from the chat client drive ``handle_event``. ``logout``
    always leaves the state Disconnected and schedules one reinitialization
    through the callback set with ``set_reinitializer``.
    """

    def __init__(self, reinit_delay: float = 5.0, clock: Callable[[], float] = time.monotonic):
        self.reinit_delay = reinit_delay
        self._clock = clock
        self._state = ConnectionState(started_at=clock())
        self._lock = threading.Lock()
        self._client: Optional[ChatClient] = None
        self._reinitializer: Optional[Callable[[], Awaitable[None]]] = None
        self._reinit_task: Optional[asyncio.Task] = None

    @property
    def phase(self) -> ConnectionPhase:
        return self._state.phase

    @property
    def is_ready(self) -> bool:
        return self._state.is_ready

    def attach_client(self, client: Optional[ChatClient]) -> None:
        self._client = client

    def set_reinitializer(self, callback: Callable[[], Awaitable[None]]) -> None:
        self._reinitializer = callback

    # =========================================================================
    # Transitions
    # =========================================================================

    def transition(self, target: ConnectionPhase, pairing_payload: Optional[str] = None) -> None:
        """
        Move to ``target``.

        Raises:
            InvalidTransitionError: ``target`` is not reachable from the
                current phase.
        """
        with self._lock:
            current = self._state.phase
            if target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(current, target)
            self._enter(target, pairing_payload)

    def _enter(self, target: ConnectionPhase, pairing_payload: Optional[str] = None) -> None:
        # Caller holds self._lock
        previous = self._state.phase
        self._state.phase = target
        self._state.pairing_payload = pairing_payload if target is ConnectionPhase.AWAITING_PAIRING else None
        if target is not ConnectionPhase.CONNECTED:
            self._state.fallback = False
        record_phase_transition(target.value)
        logger.info(f"Connection phase {previous.value} -> {target.value}")

    def handle_event(self, event: LifecycleEvent) -> bool:
        """
        Apply a lifecycle event from the chat client.

        Returns False when the event does not apply to the current phase;
        such events are logged and ignored.
        """
        if isinstance(event, PairingRequired):
            with self._lock:
                if self._state.phase is ConnectionPhase.AWAITING_PAIRING:
                    # Pairing codes are refreshed periodically
                    self._state.pairing_payload = event.payload
                    logger.info("Pairing payload refreshed")
                    return True
            target = ConnectionPhase.AWAITING_PAIRING
            payload = event.payload
        elif isinstance(event, Authenticated):
            target, payload = ConnectionPhase.AUTHENTICATED, None
        elif isinstance(event, Ready):
            target, payload = ConnectionPhase.CONNECTED, None
        elif isinstance(event, AuthFailure):
            target, payload = ConnectionPhase.FAILED, None
        elif isinstance(event, Disconnected):
            target, payload = ConnectionPhase.DISCONNECTED, None
            logger.info(f"Chat client disconnected: {event.reason}")
        else:
            logger.warning(f"Ignoring unknown lifecycle event {type(event).__name__}")
            return False

        if self._state.phase is target:
            return True

        try:
            self.transition(target, pairing_payload=payload)
        except InvalidTransitionError as e:
            logger.warning(f"Ignoring {type(event).__name__}: {e}")
            return False

        if isinstance(event, AuthFailure):
            self._state.last_error = event.reason or "Authentication failed"
        return True

    def engage_fallback(self, reason: str = "") -> None:
        """
        Report Connected without a real transport.

        Raises:
            InvalidTransitionError: not in Initializing or Failed.
        """
        with self._lock:
            current = self._state.phase
            if current not in _FALLBACK_SOURCES:
                raise InvalidTransitionError(current, ConnectionPhase.CONNECTED)
            self._enter(ConnectionPhase.CONNECTED)
            self._state.fallback = True
            if reason:
                self._state.last_error = reason
        logger.warning(f"Fallback mode engaged, accepting simulated messages only: {reason}")

    def mark_failed(self, reason: str) -> None:
        self.transition(ConnectionPhase.FAILED)
        self._state.last_error = reason

    def restart(self) -> None:
        self.transition(ConnectionPhase.INITIALIZING)

    # =========================================================================
    # Logout
    # =========================================================================

    async def logout(self) -> None:
        """
        Log the chat client out and reset to Disconnected.

        The reset happens even when the client's logout fails. One
        reinitialization is scheduled after ``reinit_delay``.
        """
        client = self._client
        if client is not None:
            try:
                await client.logout()
            except Exception as e:
                logger.error(f"Chat client logout failed, resetting state anyway: {e}")

        with self._lock:
            self._enter(ConnectionPhase.DISCONNECTED)
        logger.info("Logged out")

        self._schedule_reinitialize()

    def _schedule_reinitialize(self) -> None:
        if self._reinitializer is None:
            return
        if self._reinit_task is not None and not self._reinit_task.done():
            self._reinit_task.cancel()
        self._reinit_task = asyncio.get_running_loop().create_task(self._reinitialize_after_delay())
        logger.info(f"Reinitialization scheduled in {self.reinit_delay}s")

    async def _reinitialize_after_delay(self) -> None:
        await asyncio.sleep(self.reinit_delay)
        try:
            self.restart()
        except InvalidTransitionError as e:
            logger.info(f"Skipping reinitialization, state changed since logout: {e}")
            return
        try:
            await self._reinitializer()
        except Exception:
            logger.exception("Reinitialization failed")

    @property
    def reinit_task(self) -> Optional[asyncio.Task]:
        return self._reinit_task

    async def shutdown(self) -> None:
        if self._reinit_task is not None and not self._reinit_task.done():
            self._reinit_task.cancel()
            try:
                await self._reinit_task
            except asyncio.CancelledError:
                pass

    # =========================================================================
    # Counters and status
    # =========================================================================

    def record_ingested(self) -> None:
        with self._lock:
            self._state.message_count += 1

    def reconcile_message_count(self, count: int) -> None:
        with self._lock:
            self._state.message_count = count
        logger.info(f"Initialized with {count} existing messages")

    def get_status(self) -> ConnectionStatus:
        state = self._state
        return ConnectionStatus(
            phase=state.phase,
            is_ready=state.is_ready,
            pairing_payload=state.pairing_payload,
            message_count=state.message_count,
            uptime_seconds=int(self._clock() - state.started_at),
            fallback=state.fallback,
            last_error=state.last_error,
        )
