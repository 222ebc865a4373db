"""Service controller for the inbound mail listener.

``EmailListenerService`` is the only object the API layer talks to. It owns
the directory cache, dedup guard, pipeline, connection and reconnect
supervisor for one mailbox, and every public operation returns a
:class:`ListenerStatus` snapshot. None of the operations raise: transport
trouble is visible through the snapshot, not through exceptions.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from dealdesk.configuration.settings import ListenerSettings, SecretStore
from dealdesk.errors import DirectoryRefreshError

from .connection_manager import ConnectionEvent, MailboxConnection
from .dedup_guard import DedupGuard
from .directory_cache import UserDirectoryCache
from .pipeline import IngestionPipeline
from .ports import AccountStore, ActivityLog
from .provisioning import FallbackRecipientResolver
from .reconnect import ReconnectSupervisor, RetryStrategy


logger = logging.getLogger(__name__)


class ListenerStatus(BaseModel):
    """Point-in-time view of the listener."""

    running: bool
    connected: bool
    state: str
    reconnect_attempts: int
    max_reconnect_attempts: int
    next_retry_in_seconds: Optional[float] = None
    last_error: Optional[str] = None
    cached_user_addresses: int
    processed_message_ids: int
    dedup_capacity: int
    last_directory_refresh: Optional[datetime] = None
    pipeline: Dict[str, int] = Field(default_factory=dict)
    connection: Dict[str, int] = Field(default_factory=dict)


class EmailListenerService:
    """Start, stop and inspect the mail listener."""

    def __init__(
        self,
        settings: ListenerSettings,
        *,
        store: AccountStore,
        activity_log: ActivityLog,
        connection: Optional[MailboxConnection] = None,
        secret_store: Optional[SecretStore] = None,
    ) -> None:
        self.settings = settings
        self.directory = UserDirectoryCache(store)
        self.dedup = DedupGuard(
            capacity=settings.dedup_capacity,
            retention_seconds=settings.mailbox.window_days * 24 * 3600,
        )
        self.fallback = FallbackRecipientResolver(
            store,
            secret_store=secret_store,
            allow_provisioning=settings.auto_provision_fallback,
            admin_address=settings.fallback_admin_address or settings.mailbox.username,
        )
        self.pipeline = IngestionPipeline(
            directory=self.directory,
            dedup=self.dedup,
            store=store,
            activity_log=activity_log,
            fallback=self.fallback,
        )
        self.connection = connection or MailboxConnection(
            settings.mailbox,
            idle_renewal_seconds=settings.idle_renewal_seconds,
            idle_check_timeout=settings.idle_check_timeout,
            fetch_unread_on_start=settings.fetch_unread_on_start,
        )
        self.connection.subscribe(ConnectionEvent.MAIL, self.pipeline.process)
        self.supervisor = ReconnectSupervisor(
            self.connection,
            retry_strategy=RetryStrategy.from_settings(settings.reconnect),
        )
        self._refresh_task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Operations exposed to the API layer
    # ------------------------------------------------------------------

    async def start(self) -> ListenerStatus:
        """Start listening; a no-op while the listener is already running."""
        if self.supervisor.running:
            logger.info("Email listener already running")
            return self.status()

        logger.info(f"Starting email listener for {self.settings.mailbox.username}")
        self._stop_event.clear()
        await self._refresh_directory()
        self._start_periodic_refresh()
        await self.supervisor.start()
        return self.status()

    async def stop(self) -> ListenerStatus:
        """Stop listening and cancel any pending reconnect; always succeeds."""
        await self._stop_periodic_refresh()
        try:
            await self.supervisor.stop()
        except Exception as exc:  # noqa: BLE001
            logger.error("Error while stopping email listener", exc_info=exc)
        self._stop_event.set()
        return self.status()

    async def trigger_sync(self) -> ListenerStatus:
        """Refresh the directory, or start the listener if it is not running."""
        if not self.supervisor.running:
            return await self.start()
        await self._refresh_directory()
        return self.status()

    async def refresh_user_cache(self) -> ListenerStatus:
        await self._refresh_directory()
        return self.status()

    async def clear_dedup_cache(self) -> ListenerStatus:
        dropped = self.dedup.clear()
        logger.info(f"Cleared {dropped} processed message ids")
        return self.status()

    def status(self) -> ListenerStatus:
        supervisor = self.supervisor
        next_retry_in = None
        if supervisor.next_retry_at is not None:
            remaining = (supervisor.next_retry_at - datetime.now(timezone.utc)).total_seconds()
            next_retry_in = max(0.0, remaining)
        return ListenerStatus(
            running=supervisor.running,
            connected=supervisor.connected,
            state=supervisor.state.value,
            reconnect_attempts=supervisor.attempts,
            max_reconnect_attempts=supervisor.max_attempts,
            next_retry_in_seconds=next_retry_in,
            last_error=supervisor.last_error,
            cached_user_addresses=self.directory.size,
            processed_message_ids=len(self.dedup),
            dedup_capacity=self.dedup.capacity,
            last_directory_refresh=self.directory.last_refreshed_at,
            pipeline=self.pipeline.stats(),
            connection=self.connection.metrics.as_dict(),
        )

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Stop the listener on SIGINT/SIGTERM; reload the directory on SIGHUP."""
        loop = loop or asyncio.get_running_loop()

        def _request_stop(*_: Any) -> None:
            logger.info("Shutdown signal received, stopping email listener")
            loop.call_soon_threadsafe(lambda: loop.create_task(self.stop()))

        def _request_refresh(*_: Any) -> None:
            logger.info("Reload signal received, refreshing user directory")
            loop.call_soon_threadsafe(lambda: loop.create_task(self.refresh_user_cache()))

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _request_stop)
            except (NotImplementedError, RuntimeError):
                signal.signal(sig, _request_stop)

        sighup = getattr(signal, "SIGHUP", None)
        if sighup is not None:
            try:
                loop.add_signal_handler(sighup, _request_refresh)
            except (NotImplementedError, RuntimeError):
                signal.signal(sighup, _request_refresh)

    async def run_forever(self, *, stop_when_exhausted: bool = False) -> ListenerStatus:
        """Start and block until stopped.

        With ``stop_when_exhausted`` the call also returns once reconnect
        attempts are exhausted, which lets a process supervisor restart the
        worker instead of leaving it parked in Stopped.
        """
        await self.start()
        waiters = [asyncio.ensure_future(self._stop_event.wait())]
        if stop_when_exhausted:
            waiters.append(asyncio.ensure_future(self.supervisor.exhausted.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        if not self._stop_event.is_set():
            return await self.stop()
        return self.status()

    # ------------------------------------------------------------------
    # Directory refresh
    # ------------------------------------------------------------------

    async def _refresh_directory(self) -> None:
        try:
            await self.directory.refresh()
        except DirectoryRefreshError as exc:
            logger.error(
                f"{exc.message}; keeping {self.directory.size} cached addresses",
                extra=exc.details,
            )

    def _start_periodic_refresh(self) -> None:
        interval = self.settings.directory_refresh_seconds
        if interval <= 0:
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.get_running_loop().create_task(self._periodic_refresh(interval))

    async def _stop_periodic_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _periodic_refresh(self, interval: int) -> None:
        while True:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                return
            except asyncio.TimeoutError:
                pass
            await self._refresh_directory()


__all__ = ["EmailListenerService", "ListenerStatus"]
