"""SQLite reference implementation of the listener's store ports.

The production CRM plugs its own ORM-backed store into the listener. This
module provides a small self-contained equivalent so the listener can run
standalone and so integration tests exercise real SQL. Queries are short
local-file operations and run inline on the event loop.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Collection, Dict, List, Optional, Sequence

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from .ports import Account, AccountRole, InboundMessageRecord


_hasher = PasswordHasher()


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE COLLATE NOCASE,
    role TEXT NOT NULL,
    first_name TEXT,
    last_name TEXT,
    password_hash TEXT,
    last_communication TEXT,
    last_communication_message TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS emails (
    id TEXT PRIMARY KEY,
    subject TEXT NOT NULL,
    body TEXT NOT NULL,
    html_body TEXT NOT NULL,
    direction TEXT NOT NULL,
    status TEXT NOT NULL,
    sender_id TEXT NOT NULL REFERENCES users(id),
    recipient_id TEXT NOT NULL REFERENCES users(id),
    message_id TEXT,
    in_reply_to TEXT,
    reference_ids TEXT,
    attachments TEXT,
    delivered_at TEXT NOT NULL,
    sent_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS activities (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    user_id TEXT NOT NULL,
    performed_by TEXT NOT NULL,
    metadata TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_role ON users(role);
CREATE INDEX IF NOT EXISTS idx_emails_message_id ON emails(message_id);
CREATE INDEX IF NOT EXISTS idx_activities_user ON activities(user_id);
"""

_USER_COLUMNS = "id, email, role, first_name, last_name"


def _connect(path: Path) -> sqlite3.Connection:
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    return conn


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_account(row: Sequence[Any]) -> Account:
    return Account(
        id=row[0],
        email=row[1],
        role=AccountRole(row[2]),
        first_name=row[3],
        last_name=row[4],
    )


def _role_placeholders(roles: Collection[AccountRole]) -> tuple[str, List[str]]:
    values = [AccountRole(role).value for role in roles]
    return ", ".join("?" for _ in values), values


class SqliteCrmStore:
    """Users and inbound emails in a SQLite file."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._conn = _connect(path)

    def close(self) -> None:
        self._conn.commit()
        self._conn.close()

    # ------------------------------------------------------------------
    # Synchronous helpers (CLI, tests)
    # ------------------------------------------------------------------

    def add_account(
        self,
        *,
        email: str,
        role: AccountRole,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        credential: Optional[str] = None,
    ) -> Account:
        """Insert an account; ``credential`` is stored as an Argon2 hash.

        Raises:
            sqlite3.IntegrityError: If the address is already taken
        """
        account = Account(
            id=uuid.uuid4().hex,
            email=email.strip().lower(),
            role=AccountRole(role),
            first_name=first_name,
            last_name=last_name,
        )
        password_hash = _hasher.hash(credential) if credential else None
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO users(id, email, role, first_name, last_name, password_hash, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    account.id,
                    account.email,
                    account.role.value,
                    account.first_name,
                    account.last_name,
                    password_hash,
                    _now(),
                ),
            )
        return account

    def list_accounts(self, roles: Optional[Collection[AccountRole]] = None) -> List[Account]:
        if roles:
            placeholders, values = _role_placeholders(roles)
            cur = self._conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE role IN ({placeholders}) ORDER BY email",
                values,
            )
        else:
            cur = self._conn.execute(f"SELECT {_USER_COLUMNS} FROM users ORDER BY email")
        return [_row_to_account(row) for row in cur.fetchall()]

    def verify_credential(self, address: str, credential: str) -> bool:
        row = self._conn.execute(
            "SELECT password_hash FROM users WHERE email = ?", (address.strip().lower(),)
        ).fetchone()
        if not row or not row[0]:
            return False
        try:
            return _hasher.verify(row[0], credential)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False

    def last_communication(self, account_id: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute(
            "SELECT last_communication, last_communication_message FROM users WHERE id = ?",
            (account_id,),
        ).fetchone()
        if not row or row[0] is None:
            return None
        return {"at": datetime.fromisoformat(row[0]), "summary": row[1]}

    def list_message_records(self) -> List[Dict[str, Any]]:
        cur = self._conn.execute(
            """
            SELECT id, subject, body, html_body, direction, status, sender_id, recipient_id,
                   message_id, in_reply_to, reference_ids, attachments, delivered_at, sent_at
            FROM emails
            ORDER BY delivered_at
            """
        )
        records = []
        for row in cur.fetchall():
            records.append(
                {
                    "id": row[0],
                    "subject": row[1],
                    "body": row[2],
                    "html_body": row[3],
                    "direction": row[4],
                    "status": row[5],
                    "sender_id": row[6],
                    "recipient_id": row[7],
                    "message_id": row[8],
                    "in_reply_to": row[9],
                    "references": row[10],
                    "attachments": json.loads(row[11]) if row[11] else None,
                    "delivered_at": datetime.fromisoformat(row[12]),
                    "sent_at": datetime.fromisoformat(row[13]),
                }
            )
        return records

    # ------------------------------------------------------------------
    # AccountStore
    # ------------------------------------------------------------------

    async def list_addresses(self, roles: Collection[AccountRole]) -> Sequence[str]:
        placeholders, values = _role_placeholders(roles)
        cur = self._conn.execute(
            f"SELECT email FROM users WHERE role IN ({placeholders})", values
        )
        return [row[0] for row in cur.fetchall()]

    async def find_account_by_address(self, address: str) -> Optional[Account]:
        row = self._conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?", (address.strip().lower(),)
        ).fetchone()
        return _row_to_account(row) if row else None

    async def find_account_by_address_and_roles(
        self, address: str, roles: Collection[AccountRole]
    ) -> Optional[Account]:
        placeholders, values = _role_placeholders(roles)
        row = self._conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE email = ? AND role IN ({placeholders})",
            [address.strip().lower(), *values],
        ).fetchone()
        return _row_to_account(row) if row else None

    async def find_first_account_with_roles(
        self, roles: Collection[AccountRole]
    ) -> Optional[Account]:
        placeholders, values = _role_placeholders(roles)
        row = self._conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE role IN ({placeholders}) "
            "ORDER BY created_at, rowid LIMIT 1",
            values,
        ).fetchone()
        return _row_to_account(row) if row else None

    async def create_account(
        self,
        *,
        email: str,
        role: AccountRole,
        first_name: str,
        last_name: str,
        credential: str,
    ) -> Account:
        return self.add_account(
            email=email,
            role=role,
            first_name=first_name,
            last_name=last_name,
            credential=credential,
        )

    async def create_message_record(self, record: InboundMessageRecord) -> str:
        record_id = uuid.uuid4().hex
        attachments = (
            json.dumps([attachment.model_dump() for attachment in record.attachments])
            if record.attachments
            else None
        )
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO emails(
                    id, subject, body, html_body, direction, status, sender_id, recipient_id,
                    message_id, in_reply_to, reference_ids, attachments, delivered_at, sent_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record_id,
                    record.subject,
                    record.body,
                    record.html_body,
                    record.direction.value,
                    record.status.value,
                    record.sender_id,
                    record.recipient_id,
                    record.message_id,
                    record.in_reply_to,
                    record.references,
                    attachments,
                    record.delivered_at.isoformat(),
                    record.sent_at.isoformat(),
                ),
            )
        return record_id

    async def update_last_communication(
        self, account_id: str, *, at: datetime, summary: str
    ) -> None:
        with self._conn:
            self._conn.execute(
                """
                UPDATE users
                SET last_communication = ?, last_communication_message = ?
                WHERE id = ?
                """,
                (at.isoformat(), summary, account_id),
            )


class SqliteActivityLog:
    """Activity feed table sharing the store's database file."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._conn = _connect(path)

    def close(self) -> None:
        self._conn.commit()
        self._conn.close()

    async def record(
        self,
        *,
        type: str,
        title: str,
        description: str,
        subject_account_id: str,
        actor_account_id: str,
        metadata: Dict[str, Any],
    ) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO activities(id, type, title, description, user_id, performed_by, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    uuid.uuid4().hex,
                    type,
                    title,
                    description,
                    subject_account_id,
                    actor_account_id,
                    json.dumps(metadata, default=str),
                    _now(),
                ),
            )

    def list_activities(self, account_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if account_id is None:
            cur = self._conn.execute(
                "SELECT type, title, description, user_id, performed_by, metadata FROM activities ORDER BY created_at"
            )
        else:
            cur = self._conn.execute(
                "SELECT type, title, description, user_id, performed_by, metadata FROM activities "
                "WHERE user_id = ? ORDER BY created_at",
                (account_id,),
            )
        return [
            {
                "type": row[0],
                "title": row[1],
                "description": row[2],
                "subject_account_id": row[3],
                "actor_account_id": row[4],
                "metadata": json.loads(row[5]) if row[5] else {},
            }
            for row in cur.fetchall()
        ]


__all__ = ["SCHEMA", "SqliteActivityLog", "SqliteCrmStore"]
