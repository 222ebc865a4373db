"""Tests for the IMAP mailbox connection."""

from __future__ import annotations

import asyncio
import ssl
import threading
import time
from datetime import date, datetime, timezone
from email.message import EmailMessage
from typing import Any, Dict, List

import pytest

from dealdesk.configuration.settings import MailboxSettings
from dealdesk.errors import MailboxConnectionError
from dealdesk.ingestion.mailbox.reconnect import ConnectionState, ReconnectSupervisor, RetryStrategy
from dealdesk.ingestion.mailbox.connection_manager import (
    ConnectionEvent,
    MailboxConnection,
    build_search_criteria,
)


def _raw(message_id: str, subject: str = "Hi") -> bytes:
    msg = EmailMessage()
    msg["From"] = "Alice <alice@co.com>"
    msg["To"] = "ops@co.com"
    msg["Subject"] = subject
    msg["Message-ID"] = f"<{message_id}>"
    msg.set_content("hello")
    return msg.as_bytes()


class StubIMAPClient:
    """Minimal IMAPClient-compatible stub for connection tests."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        ssl: bool,
        ssl_context: ssl.SSLContext,
        timeout: int,
        use_uid: bool,
    ) -> None:
        self.host = host
        self.port = port
        self.ssl = ssl
        self.ssl_context = ssl_context
        self.timeout = timeout
        self.use_uid = use_uid
        self.login_calls: List[tuple[str, str]] = []
        self.logged_out = False
        self.selected: tuple[str, bool] | None = None
        self.idle_calls = 0
        self.idle_done_calls = 0
        self.idle_responses: List[List[Any]] = []
        self.search_calls: List[List[Any]] = []
        self.search_results: List[int] = []
        self.messages: Dict[int, bytes] = {}
        self.fetched: List[int] = []
        self.fail_login = False
        self.login_gate: threading.Event | None = None
        self.login_entered = threading.Event()

    def login(self, username: str, password: str) -> None:
        self.login_calls.append((username, password))
        self.login_entered.set()
        if self.login_gate is not None:
            self.login_gate.wait(timeout=5)
        if self.fail_login:
            raise RuntimeError("authentication failed")

    def logout(self) -> None:
        self.logged_out = True

    def select_folder(self, folder: str, readonly: bool = False) -> dict:
        self.selected = (folder, readonly)
        return {}

    def idle(self) -> None:
        self.idle_calls += 1

    def idle_check(self, timeout: float) -> List[Any]:
        if self.idle_responses:
            return self.idle_responses.pop(0)
        time.sleep(min(timeout, 0.01))
        return []

    def idle_done(self) -> tuple:
        self.idle_done_calls += 1
        return (b"OK", [])

    def search(self, criteria: List[Any]) -> List[int]:
        self.search_calls.append(criteria)
        return list(self.search_results)

    def fetch(self, uids: List[int], items: List[str]) -> Dict[int, Dict[bytes, bytes]]:
        assert items == ["BODY.PEEK[]"]
        self.fetched.extend(uids)
        return {uid: {b"BODY[]": self.messages[uid]} for uid in uids if uid in self.messages}

    def shutdown(self) -> None:
        self.logged_out = True


@pytest.fixture
def settings() -> MailboxSettings:
    return MailboxSettings(username="ops@co.com", password="secret", window_days=7)


@pytest.fixture
def stub_factory():
    created: List[StubIMAPClient] = []
    options: Dict[str, Any] = {}

    def _factory(**kwargs: Any) -> StubIMAPClient:
        client = StubIMAPClient(**kwargs)
        for key, value in options.items():
            setattr(client, key, value)
        created.append(client)
        return client

    _factory.created = created  # type: ignore[attr-defined]
    _factory.options = options  # type: ignore[attr-defined]
    return _factory


def _connection(settings, factory, **kwargs) -> MailboxConnection:
    return MailboxConnection(
        settings, idle_check_timeout=0.01, client_factory=factory, **kwargs
    )


def test_build_search_criteria_uses_trailing_window() -> None:
    now = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)
    assert build_search_criteria(7, now=now) == ["UNSEEN", "SINCE", date(2025, 1, 3)]


@pytest.mark.asyncio
async def test_connect_logs_in_and_selects_readonly(settings, stub_factory) -> None:
    connection = _connection(settings, stub_factory)
    events: List[str] = []

    async def on_connected(_payload):
        events.append("connected")

    connection.subscribe(ConnectionEvent.CONNECTED, on_connected)
    await connection.connect()

    client = stub_factory.created[0]
    assert client.use_uid is True
    assert client.ssl is True
    assert client.ssl_context.verify_mode == ssl.CERT_REQUIRED
    assert client.login_calls == [("ops@co.com", "secret")]
    assert client.selected == ("INBOX", True)
    assert connection.is_connected
    assert events == ["connected"]
    assert connection.metrics.successful_connections == 1

    await connection.close()
    assert client.logged_out
    assert not connection.is_connected


@pytest.mark.asyncio
async def test_connect_failure_emits_error_and_raises(settings, stub_factory) -> None:
    stub_factory.options["fail_login"] = True
    connection = _connection(settings, stub_factory)
    errors: List[Exception] = []

    async def on_error(exc):
        errors.append(exc)

    connection.subscribe(ConnectionEvent.ERROR, on_error)

    with pytest.raises(MailboxConnectionError):
        await connection.connect()

    assert len(errors) == 1
    assert stub_factory.created[0].logged_out
    assert not connection.is_connected
    assert connection.metrics.failed_connections == 1


@pytest.mark.asyncio
async def test_new_mail_is_fetched_with_peek_and_emitted(settings, stub_factory) -> None:
    connection = _connection(settings, stub_factory)
    await connection.connect()
    client = stub_factory.created[0]
    client.search_results = [5]
    client.messages = {5: _raw("abc123")}
    client.idle_responses = [[(1, b"EXISTS")]]

    received = []
    got_mail = asyncio.Event()

    async def on_mail(mail):
        received.append(mail)
        got_mail.set()

    connection.subscribe(ConnectionEvent.MAIL, on_mail)
    listen_task = asyncio.create_task(connection.listen())
    await asyncio.wait_for(got_mail.wait(), timeout=2)
    await connection.close()
    await asyncio.wait_for(listen_task, timeout=2)

    assert [mail.message_id for mail in received] == ["abc123"]
    assert received[0].uid == 5
    assert client.search_calls[0][:2] == ["UNSEEN", "SINCE"]
    assert client.idle_done_calls >= 1
    assert client.logged_out
    assert connection.metrics.messages_emitted == 1


@pytest.mark.asyncio
async def test_messages_are_not_refetched_within_a_session(settings, stub_factory) -> None:
    connection = _connection(settings, stub_factory)
    await connection.connect()
    client = stub_factory.created[0]
    client.search_results = [5]
    client.messages = {5: _raw("m5"), 6: _raw("m6")}
    client.idle_responses = [[(1, b"EXISTS")], [(2, b"EXISTS")]]

    received = []
    got_two = asyncio.Event()

    async def on_mail(mail):
        received.append(mail.message_id)
        client.search_results = [5, 6]
        if len(received) == 2:
            got_two.set()

    connection.subscribe(ConnectionEvent.MAIL, on_mail)
    listen_task = asyncio.create_task(connection.listen())
    await asyncio.wait_for(got_two.wait(), timeout=2)
    await connection.close()
    await asyncio.wait_for(listen_task, timeout=2)

    assert received == ["m5", "m6"]
    assert client.fetched == [5, 6]


@pytest.mark.asyncio
async def test_fetch_unread_on_start_sweeps_before_idle(settings, stub_factory) -> None:
    connection = _connection(settings, stub_factory, fetch_unread_on_start=True)
    await connection.connect()
    client = stub_factory.created[0]
    client.search_results = [9]
    client.messages = {9: _raw("backlog")}

    got_mail = asyncio.Event()

    async def on_mail(_mail):
        got_mail.set()

    connection.subscribe(ConnectionEvent.MAIL, on_mail)
    listen_task = asyncio.create_task(connection.listen())
    await asyncio.wait_for(got_mail.wait(), timeout=2)
    await connection.close()
    await asyncio.wait_for(listen_task, timeout=2)

    assert client.fetched == [9]


@pytest.mark.asyncio
async def test_server_bye_drops_session(settings, stub_factory) -> None:
    connection = _connection(settings, stub_factory)
    await connection.connect()
    client = stub_factory.created[0]
    client.idle_responses = [[(b"BYE", b"Logging out")]]

    events: List[str] = []

    async def on_disconnected(_payload):
        events.append("disconnected")

    async def on_error(_payload):
        events.append("error")

    connection.subscribe(ConnectionEvent.DISCONNECTED, on_disconnected)
    connection.subscribe(ConnectionEvent.ERROR, on_error)

    with pytest.raises(MailboxConnectionError):
        await asyncio.wait_for(connection.listen(), timeout=2)

    assert events == ["error", "disconnected"]
    assert not connection.is_connected
    assert connection.metrics.disconnects == 1


@pytest.mark.asyncio
async def test_handler_failure_does_not_break_listening(settings, stub_factory) -> None:
    connection = _connection(settings, stub_factory)
    await connection.connect()
    client = stub_factory.created[0]
    client.search_results = [1, 2]
    client.messages = {1: _raw("one"), 2: _raw("two")}
    client.idle_responses = [[(3, b"EXISTS")]]

    seen = []
    done = asyncio.Event()

    async def on_mail(mail):
        seen.append(mail.message_id)
        if mail.message_id == "one":
            raise RuntimeError("handler blew up")
        done.set()

    connection.subscribe(ConnectionEvent.MAIL, on_mail)
    listen_task = asyncio.create_task(connection.listen())
    await asyncio.wait_for(done.wait(), timeout=2)
    await connection.close()
    await asyncio.wait_for(listen_task, timeout=2)

    assert seen == ["one", "two"]


@pytest.mark.asyncio
async def test_listen_requires_connection(settings, stub_factory) -> None:
    connection = _connection(settings, stub_factory)
    with pytest.raises(MailboxConnectionError):
        await connection.listen()


async def _wait_for_login(clients: List[StubIMAPClient], count: int) -> StubIMAPClient:
    for _ in range(400):
        if len(clients) >= count and clients[count - 1].login_entered.is_set():
            return clients[count - 1]
        await asyncio.sleep(0.005)
    raise AssertionError("login never started")


@pytest.mark.asyncio
async def test_cancelled_connect_logs_out_late_session(settings, stub_factory) -> None:
    gate = threading.Event()
    stub_factory.options["login_gate"] = gate
    connection = _connection(settings, stub_factory)

    connect_task = asyncio.create_task(connection.connect())
    client = await _wait_for_login(stub_factory.created, 1)
    connect_task.cancel()
    gate.set()

    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(connect_task, timeout=2)

    assert client.logged_out
    assert not connection.is_connected
    assert connection.metrics.successful_connections == 0


@pytest.mark.asyncio
async def test_stop_during_retry_login_leaves_no_session(settings) -> None:
    gate = threading.Event()
    created: List[StubIMAPClient] = []

    def factory(**kwargs: Any) -> StubIMAPClient:
        client = StubIMAPClient(**kwargs)
        if not created:
            client.fail_login = True
        else:
            client.login_gate = gate
        created.append(client)
        return client

    connection = _connection(settings, factory)
    supervisor = ReconnectSupervisor(
        connection, retry_strategy=RetryStrategy(max_attempts=3, base_delay=0.0)
    )

    await supervisor.start()
    retry_client = await _wait_for_login(created, 2)

    stop_task = asyncio.create_task(supervisor.stop())
    await asyncio.sleep(0.01)
    gate.set()
    await asyncio.wait_for(stop_task, timeout=2)

    assert supervisor.state == ConnectionState.STOPPED
    assert retry_client.logged_out
    assert not connection.is_connected
