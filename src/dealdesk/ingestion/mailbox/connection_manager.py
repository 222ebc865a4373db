"""IMAP connection lifecycle for the inbound mail listener.

``MailboxConnection`` owns the single TLS session to the CRM mailbox. It
connects and authenticates, selects the watched folder read-only, waits for
new mail with IMAP IDLE and emits one ``MAIL`` event per unread message in the
trailing window. Messages are fetched with ``BODY.PEEK[]`` so other mail
clients still see them as unread.

imapclient is blocking; every client call runs in the default executor while
event handlers are awaited one at a time on the event loop, so message
processing stays strictly sequential.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import ssl
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, DefaultDict, Dict, List, Optional

import certifi
from imapclient import IMAPClient

from dealdesk.configuration.settings import MailboxSettings
from dealdesk.errors import MailboxConnectionError

from .email_parser import InboundMail, MailParser


logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Awaitable[Any]]


class ConnectionEvent(str, Enum):
    """Events a mailbox connection publishes."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    MAIL = "mail"
    ERROR = "error"


@dataclass
class ConnectionMetrics:
    """Aggregated metrics for connection health reporting."""

    total_connections: int = 0
    successful_connections: int = 0
    failed_connections: int = 0
    disconnects: int = 0
    idle_renewals: int = 0
    messages_emitted: int = 0

    def record_attempt(self, success: bool) -> None:
        self.total_connections += 1
        if success:
            self.successful_connections += 1
        else:
            self.failed_connections += 1

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def build_search_criteria(window_days: int, now: Optional[datetime] = None) -> List[Any]:
    """Unread messages received within the trailing window."""
    now = now or datetime.now(timezone.utc)
    since: date = (now - timedelta(days=window_days)).date()
    return ["UNSEEN", "SINCE", since]


def create_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.load_verify_locations(certifi.where())
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    return context


class MailboxConnection:
    """Single IMAP session publishing connection and new-mail events."""

    def __init__(
        self,
        settings: MailboxSettings,
        *,
        parser: Optional[MailParser] = None,
        idle_renewal_seconds: int = 600,
        idle_check_timeout: float = 5.0,
        fetch_unread_on_start: bool = False,
        client_factory: Callable[..., Any] = IMAPClient,
    ) -> None:
        self.settings = settings
        self.parser = parser or MailParser()
        self.idle_renewal_seconds = idle_renewal_seconds
        self.idle_check_timeout = idle_check_timeout
        self.fetch_unread_on_start = fetch_unread_on_start
        self.metrics = ConnectionMetrics()
        self._client_factory = client_factory
        self._client: Optional[Any] = None
        self._handlers: DefaultDict[ConnectionEvent, List[EventHandler]] = defaultdict(list)
        self._stopping = False
        self._listening = False
        self._listen_finished: Optional[asyncio.Event] = None
        self._high_water_uid = 0

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, event: ConnectionEvent, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    async def _emit(self, event: ConnectionEvent, payload: Any = None) -> None:
        for handler in list(self._handlers[event]):
            try:
                await handler(payload)
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Handler for '{event.value}' event failed", exc_info=exc)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Open, authenticate and select the watched folder.

        Raises:
            MailboxConnectionError: On any transport or authentication failure
        """
        self._stopping = False
        self._high_water_uid = 0
        pending = asyncio.get_running_loop().run_in_executor(None, self._establish)
        try:
            client = await asyncio.shield(pending)
        except asyncio.CancelledError:
            # The login thread keeps running; its session must not outlive us.
            self._stopping = True
            await self._discard_pending(pending)
            raise
        except Exception as exc:  # noqa: BLE001
            self.metrics.record_attempt(False)
            await self._emit(ConnectionEvent.ERROR, exc)
            raise MailboxConnectionError(
                f"Could not connect to {self.settings.host}:{self.settings.port}: {exc}",
                details={"host": self.settings.host, "port": self.settings.port},
            ) from exc

        if self._stopping:
            await self._run(self._logout, client)
            raise MailboxConnectionError("Connection closed while connecting")

        self._client = client
        self.metrics.record_attempt(True)
        logger.info(
            f"Connected to {self.settings.host} as {self.settings.username}",
            extra={"folder": self.settings.folder},
        )
        await self._emit(ConnectionEvent.CONNECTED)

    def _establish(self) -> Any:
        client = self._client_factory(
            host=self.settings.host,
            port=self.settings.port,
            ssl=True,
            ssl_context=create_ssl_context(),
            timeout=self.settings.connection_timeout,
            use_uid=True,
        )
        try:
            client.login(self.settings.username, self.settings.password.get_secret_value())
            client.select_folder(self.settings.folder, readonly=True)
        except Exception:
            self._logout(client)
            raise
        return client

    async def listen(self) -> None:
        """Wait for new mail until closed.

        Returns normally after :meth:`close`; any transport failure is emitted
        as ``ERROR`` and ``DISCONNECTED`` and raised as MailboxConnectionError.
        """
        if self._client is None:
            raise MailboxConnectionError("Not connected")

        self._listening = True
        self._listen_finished = asyncio.Event()
        try:
            if self.fetch_unread_on_start:
                await self._emit_unread()
            await self._idle_loop()
        except Exception as exc:  # noqa: BLE001
            if self._stopping:
                return
            logger.warning(f"Mailbox session lost: {exc}")
            await self._emit(ConnectionEvent.ERROR, exc)
            await self._drop_client()
            raise MailboxConnectionError(f"Mailbox session lost: {exc}") from exc
        finally:
            self._listening = False
            if self._stopping:
                await self._drop_client()
            self._listen_finished.set()

    async def close(self, timeout: Optional[float] = None) -> None:
        """Close the session; safe to call in any state."""
        self._stopping = True
        if self._listening and self._listen_finished is not None:
            wait_for = timeout if timeout is not None else self.idle_check_timeout + self.settings.connection_timeout
            try:
                await asyncio.wait_for(self._listen_finished.wait(), timeout=wait_for)
                return
            except asyncio.TimeoutError:
                logger.warning("Listener did not stop in time, shutting socket down")
                client = self._client
                if client is not None:
                    await self._run(self._shutdown, client)
                return
        await self._drop_client()

    # ------------------------------------------------------------------
    # IDLE loop
    # ------------------------------------------------------------------

    async def _idle_loop(self) -> None:
        client = self._client
        loop = asyncio.get_running_loop()
        await self._run(client.idle)
        idle_started = loop.time()

        while not self._stopping:
            responses = await self._run(client.idle_check, timeout=self.idle_check_timeout)
            if self._stopping:
                break
            if self._server_said_bye(responses):
                raise MailboxConnectionError("Server closed the session")

            if self._has_new_mail(responses):
                await self._run(client.idle_done)
                await self._emit_unread()
                await self._run(client.idle)
                idle_started = loop.time()
            elif loop.time() - idle_started >= self.idle_renewal_seconds:
                await self._run(client.idle_done)
                await self._run(client.idle)
                idle_started = loop.time()
                self.metrics.idle_renewals += 1
                logger.debug(f"IDLE renewed for {self.settings.folder}")

        try:
            await self._run(client.idle_done)
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"idle_done during shutdown failed: {exc}")

    async def _emit_unread(self) -> None:
        client = self._client
        criteria = build_search_criteria(self.settings.window_days)
        uids = await self._run(client.search, criteria)
        pending = sorted(int(uid) for uid in uids if int(uid) > self._high_water_uid)
        if pending:
            logger.info(f"{len(pending)} unread message(s) in {self.settings.folder}")

        for uid in pending:
            if self._stopping:
                break
            response = await self._run(client.fetch, [uid], ["BODY.PEEK[]"])
            self._high_water_uid = max(self._high_water_uid, uid)
            raw = response.get(uid, {}).get(b"BODY[]")
            if raw is None:
                logger.warning(f"Server returned no body for UID {uid}")
                continue
            try:
                mail: InboundMail = self.parser.parse(raw, uid=uid)
            except ValueError as exc:
                logger.warning(f"Skipping unparseable message UID {uid}: {exc}")
                continue
            self.metrics.messages_emitted += 1
            await self._emit(ConnectionEvent.MAIL, mail)

    @staticmethod
    def _has_new_mail(responses: List[Any]) -> bool:
        # IDLE responses look like: [(3, b'EXISTS')]
        for response in responses or []:
            if not isinstance(response, (tuple, list)):
                continue
            for item in response:
                if isinstance(item, bytes) and item.upper().endswith(b"EXISTS"):
                    return True
                if isinstance(item, str) and item.upper().endswith("EXISTS"):
                    return True
        return False

    @staticmethod
    def _server_said_bye(responses: List[Any]) -> bool:
        for response in responses or []:
            if isinstance(response, (tuple, list)) and response and response[0] in (b"BYE", "BYE"):
                return True
        return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _run(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def _discard_pending(self, pending: "asyncio.Future[Any]") -> None:
        try:
            client = await pending
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"Cancelled connect failed anyway: {exc}")
            return
        await self._run(self._logout, client)
        logger.info(f"Discarded session to {self.settings.host} opened during stop")

    async def _drop_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        await self._run(self._logout, client)
        self.metrics.disconnects += 1
        logger.info(f"Disconnected from {self.settings.host}")
        await self._emit(ConnectionEvent.DISCONNECTED)

    @staticmethod
    def _logout(client: Any) -> None:
        try:
            client.logout()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error during logout", exc_info=exc)

    @staticmethod
    def _shutdown(client: Any) -> None:
        try:
            client.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error during socket shutdown", exc_info=exc)


__all__ = [
    "ConnectionEvent",
    "ConnectionMetrics",
    "MailboxConnection",
    "build_search_criteria",
    "create_ssl_context",
]
