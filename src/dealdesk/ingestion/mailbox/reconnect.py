"""Reconnect state machine for the mailbox connection.

The supervisor turns transport failures into bounded, delayed retries:

    Disconnected --start()--> Connecting
    Connecting   --success--> Connected          (attempt counter reset)
    Connecting   --failure--> ReconnectPending   (counter + 1)
    Connected    --session lost--> ReconnectPending (counter + 1)
    ReconnectPending --counter < max, after delay--> Connecting
    ReconnectPending --counter >= max--> Stopped
    any          --stop()--> Stopped
    Stopped      --start()--> Connecting

Stopped is terminal for automatic recovery; only an explicit ``start()``
leaves it. Any scheduled retry is cancelled on ``stop()``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Set

from dealdesk.configuration.settings import ReconnectSettings
from dealdesk.errors import InvalidStateTransitionError, MailboxConnectionError

from .connection_manager import MailboxConnection


logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Listener connection lifecycle states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_PENDING = "reconnect_pending"
    STOPPED = "stopped"


VALID_TRANSITIONS: Dict[ConnectionState, Set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: {
        ConnectionState.CONNECTING,
        ConnectionState.STOPPED,
    },
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.RECONNECT_PENDING,
        ConnectionState.STOPPED,
    },
    ConnectionState.CONNECTED: {
        ConnectionState.RECONNECT_PENDING,
        ConnectionState.STOPPED,
    },
    ConnectionState.RECONNECT_PENDING: {
        ConnectionState.CONNECTING,
        ConnectionState.STOPPED,
    },
    ConnectionState.STOPPED: {
        ConnectionState.CONNECTING,
    },
}

ACTIVE_STATES = frozenset(
    {
        ConnectionState.CONNECTING,
        ConnectionState.CONNECTED,
        ConnectionState.RECONNECT_PENDING,
    }
)


@dataclass
class RetryStrategy:
    """Bounded retry policy; fixed delay unless exponential backoff is enabled."""

    max_attempts: int = 5
    base_delay: float = 30.0
    exponential: bool = False
    exponential_base: float = 2.0
    max_delay: float = 600.0
    jitter: bool = False

    @classmethod
    def from_settings(cls, settings: ReconnectSettings) -> "RetryStrategy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.delay_seconds,
            exponential=settings.backoff == "exponential",
            max_delay=settings.max_delay_seconds,
            jitter=settings.jitter,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if self.exponential:
            delay = min(self.base_delay * (self.exponential_base ** max(0, attempt - 1)), self.max_delay)
        else:
            delay = self.base_delay
        if self.jitter:
            delay *= 1 + random.random() * 0.5
        return delay

    def should_retry(self, attempts: int) -> bool:
        return attempts < self.max_attempts


class ReconnectSupervisor:
    """Drive a :class:`MailboxConnection` through the reconnect state machine."""

    def __init__(
        self,
        connection: MailboxConnection,
        *,
        retry_strategy: Optional[RetryStrategy] = None,
    ) -> None:
        self.connection = connection
        self.retry_strategy = retry_strategy or RetryStrategy()
        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self.last_error: Optional[str] = None
        self.state_changed_at = datetime.now(timezone.utc)
        self.next_retry_at: Optional[datetime] = None
        self.exhausted = asyncio.Event()
        self._stopping = False
        self._listen_task: Optional[asyncio.Task[None]] = None
        self._retry_task: Optional[asyncio.Task[None]] = None

    @property
    def max_attempts(self) -> int:
        return self.retry_strategy.max_attempts

    @property
    def running(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    async def start(self) -> bool:
        """Enter Connecting unless already active; returns whether it did."""
        if self.running:
            logger.info(f"Listener already {self.state.value}; start ignored")
            return False
        self._stopping = False
        self.attempts = 0
        self.exhausted.clear()
        await self._attempt()
        return True

    async def stop(self) -> None:
        """Cancel any pending retry, close the session and enter Stopped."""
        self._stopping = True
        retry_task, self._retry_task = self._retry_task, None
        if retry_task is not None and retry_task is not asyncio.current_task():
            retry_task.cancel()
            try:
                await retry_task
            except asyncio.CancelledError:
                pass
        self.next_retry_at = None

        await self.connection.close()

        listen_task, self._listen_task = self._listen_task, None
        if listen_task is not None and not listen_task.done():
            try:
                await asyncio.wait_for(listen_task, timeout=self.connection.idle_check_timeout + 1)
            except asyncio.TimeoutError:
                listen_task.cancel()
            except Exception as exc:  # noqa: BLE001
                logger.debug(f"Listener task ended with {exc!r} during stop")

        if self.state != ConnectionState.STOPPED:
            self._transition(ConnectionState.STOPPED, reason="stop requested")
        logger.info("Email listener stopped")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _attempt(self) -> None:
        self._transition(ConnectionState.CONNECTING)
        try:
            await self.connection.connect()
        except Exception as exc:  # noqa: BLE001
            await self._on_failure(exc)
            return

        if self._stopping:
            return
        self.attempts = 0
        self.last_error = None
        self._transition(ConnectionState.CONNECTED)
        self._listen_task = asyncio.get_running_loop().create_task(self._listen())

    async def _listen(self) -> None:
        try:
            await self.connection.listen()
        except Exception as exc:  # noqa: BLE001
            await self._on_failure(exc)
            return
        if not self._stopping:
            await self._on_failure(MailboxConnectionError("Mailbox session ended unexpectedly"))

    async def _on_failure(self, exc: BaseException) -> None:
        if self._stopping:
            return
        self.attempts += 1
        self.last_error = str(exc)
        self._transition(ConnectionState.RECONNECT_PENDING, reason=self.last_error)

        if not self.retry_strategy.should_retry(self.attempts):
            logger.error(
                f"Max reconnection attempts reached ({self.attempts}/{self.max_attempts}). "
                "Email listener stopped."
            )
            self._transition(ConnectionState.STOPPED, reason="retries exhausted")
            self.exhausted.set()
            return

        delay = self.retry_strategy.calculate_delay(self.attempts)
        self.next_retry_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        logger.warning(
            f"Mailbox connection failed: {exc}. Reconnecting in {delay:.1f}s "
            f"({self.attempts}/{self.max_attempts})"
        )
        self._retry_task = asyncio.get_running_loop().create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._stopping:
            return
        self.next_retry_at = None
        await self._attempt()

    def _transition(self, to_state: ConnectionState, *, reason: Optional[str] = None) -> None:
        from_state = self.state
        if to_state != from_state and to_state not in VALID_TRANSITIONS[from_state]:
            raise InvalidStateTransitionError(
                f"Invalid transition: {from_state.value} → {to_state.value}",
                details={"from": from_state.value, "to": to_state.value},
            )
        self.state = to_state
        self.state_changed_at = datetime.now(timezone.utc)
        logger.debug(
            "Listener state transition",
            extra={
                "from_state": from_state.value,
                "to_state": to_state.value,
                "attempts": self.attempts,
                "reason": reason,
            },
        )


__all__ = [
    "ACTIVE_STATES",
    "ConnectionState",
    "ReconnectSupervisor",
    "RetryStrategy",
    "VALID_TRANSITIONS",
]
