"""Shared fixtures for mail listener tests."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Collection, Dict, List, Optional

import pytest

from dealdesk.configuration.settings import ListenerSettings, SecretStore
from dealdesk.ingestion.mailbox.email_parser import InboundMail
from dealdesk.ingestion.mailbox.ports import Account, AccountRole, InboundMessageRecord


class FakeStore:
    """In-memory AccountStore."""

    def __init__(self) -> None:
        self.accounts: Dict[str, Account] = {}
        self.records: List[InboundMessageRecord] = []
        self.last_communication: Dict[str, Dict[str, Any]] = {}
        self.created: List[Account] = []
        self.fail_list = False
        self.fail_create_record = False
        self.fail_update = False
        self.list_calls = 0

    def add(self, account_id: str, email: str, role: AccountRole) -> Account:
        account = Account(id=account_id, email=email, role=role)
        self.accounts[account_id] = account
        return account

    async def list_addresses(self, roles: Collection[AccountRole]) -> List[str]:
        self.list_calls += 1
        if self.fail_list:
            raise RuntimeError("database unavailable")
        return [a.email for a in self.accounts.values() if a.role in roles]

    async def find_account_by_address(self, address: str) -> Optional[Account]:
        for account in self.accounts.values():
            if account.email.lower() == address:
                return account
        return None

    async def find_account_by_address_and_roles(
        self, address: str, roles: Collection[AccountRole]
    ) -> Optional[Account]:
        account = await self.find_account_by_address(address)
        if account is not None and account.role in roles:
            return account
        return None

    async def find_first_account_with_roles(
        self, roles: Collection[AccountRole]
    ) -> Optional[Account]:
        for account in self.accounts.values():
            if account.role in roles:
                return account
        return None

    async def create_account(
        self,
        *,
        email: str,
        role: AccountRole,
        first_name: str,
        last_name: str,
        credential: str,
    ) -> Account:
        account = Account(
            id=f"A{len(self.accounts) + 1}",
            email=email,
            role=role,
            first_name=first_name,
            last_name=last_name,
        )
        self.accounts[account.id] = account
        self.created.append(account)
        return account

    async def create_message_record(self, record: InboundMessageRecord) -> str:
        if self.fail_create_record:
            raise RuntimeError("constraint violation")
        self.records.append(record)
        return f"E{len(self.records)}"

    async def update_last_communication(
        self, account_id: str, *, at: datetime, summary: str
    ) -> None:
        if self.fail_update:
            raise RuntimeError("update failed")
        self.last_communication[account_id] = {"at": at, "summary": summary}


class FakeActivityLog:
    """In-memory ActivityLog."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []
        self.fail = False

    async def record(self, **event: Any) -> None:
        if self.fail:
            raise RuntimeError("activity feed down")
        self.events.append(event)


class InMemorySecretStore(SecretStore):
    def __init__(self) -> None:
        super().__init__(service_name="test", keyring_module=None)
        self.storage: Dict[str, str] = {}

    def set_secret(self, key: str, value: str) -> None:  # type: ignore[override]
        self.storage[key] = value

    def get_secret(self, key: str) -> str | None:  # type: ignore[override]
        return self.storage.get(key)

    def delete_secret(self, key: str) -> None:  # type: ignore[override]
        self.storage.pop(key, None)


@pytest.fixture
def store() -> FakeStore:
    store = FakeStore()
    store.add("U1", "alice@co.com", AccountRole.CLIENT)
    store.add("S1", "ops@co.com", AccountRole.STAFF)
    return store


@pytest.fixture
def activity_log() -> FakeActivityLog:
    return FakeActivityLog()


@pytest.fixture
def secret_store() -> InMemorySecretStore:
    return InMemorySecretStore()


@pytest.fixture
def make_mail():
    def _make(**fields: Any) -> InboundMail:
        payload: Dict[str, Any] = {
            "from": "Alice <alice@co.com>",
            "to": "ops@co.com",
            "subject": "Hi",
            "text": "Hello there",
            "message_id": "abc123",
        }
        if "from_" in fields:
            payload.pop("from")
        payload.update(fields)
        return InboundMail(**payload)

    return _make


@pytest.fixture
def listener_settings() -> ListenerSettings:
    return ListenerSettings.model_validate(
        {
            "mailbox": {"username": "ops@co.com", "password": "app-password"},
            "reconnect": {"delay_seconds": 0.01, "max_attempts": 3},
            "idle_check_timeout": 0.01,
        }
    )
