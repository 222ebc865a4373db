"""Contracts between the mail listener and the CRM it feeds.

The listener never talks to the CRM schema directly. The persistent store and
the activity log are injected as objects satisfying these protocols, so the
production ORM-backed implementation and the bundled SQLite reference store
are interchangeable.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Collection, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, Field


class AccountRole(str, Enum):
    """Account roles known to the CRM."""

    CLIENT = "CLIENT"
    STAFF = "STAFF"
    ADMIN = "ADMIN"


#: Roles whose inbound mail is tracked (the directory cache population).
TRACKED_ROLES = frozenset({AccountRole.CLIENT})

#: Roles allowed to be the recipient of an inbound record.
SYSTEM_ROLES = frozenset({AccountRole.STAFF, AccountRole.ADMIN})


class MessageDirection(str, Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class MessageStatus(str, Enum):
    DELIVERED = "DELIVERED"


class Account(BaseModel):
    """CRM account as seen by the listener."""

    id: str
    email: str
    role: AccountRole
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class AttachmentRecord(BaseModel):
    """Attachment metadata stored alongside an inbound record."""

    filename: str
    content_type: str = "application/octet-stream"
    size: int = Field(default=0, ge=0)
    path: Optional[str] = None


class InboundMessageRecord(BaseModel):
    """Inbound email as persisted in the CRM conversation model."""

    subject: str
    body: str
    html_body: str
    direction: MessageDirection = MessageDirection.INBOUND
    status: MessageStatus = MessageStatus.DELIVERED
    sender_id: str
    recipient_id: str
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    attachments: Optional[List[AttachmentRecord]] = None
    delivered_at: datetime
    sent_at: datetime

    @property
    def attachment_count(self) -> int:
        return len(self.attachments or [])


class AccountStore(Protocol):
    """Persistent account and message store."""

    async def list_addresses(self, roles: Collection[AccountRole]) -> Sequence[str]:
        """Return the email addresses of every account holding one of ``roles``."""
        ...

    async def find_account_by_address(self, address: str) -> Optional[Account]:
        ...

    async def find_account_by_address_and_roles(
        self, address: str, roles: Collection[AccountRole]
    ) -> Optional[Account]:
        ...

    async def find_first_account_with_roles(
        self, roles: Collection[AccountRole]
    ) -> Optional[Account]:
        ...

    async def create_account(
        self,
        *,
        email: str,
        role: AccountRole,
        first_name: str,
        last_name: str,
        credential: str,
    ) -> Account:
        """Create an account; the store is responsible for hashing ``credential``."""
        ...

    async def create_message_record(self, record: InboundMessageRecord) -> str:
        """Persist ``record`` and return its identifier."""
        ...

    async def update_last_communication(
        self, account_id: str, *, at: datetime, summary: str
    ) -> None:
        ...


class ActivityLog(Protocol):
    """CRM activity/audit feed."""

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
        ...


__all__ = [
    "Account",
    "AccountRole",
    "AccountStore",
    "ActivityLog",
    "AttachmentRecord",
    "InboundMessageRecord",
    "MessageDirection",
    "MessageStatus",
    "SYSTEM_ROLES",
    "TRACKED_ROLES",
]
