"""Per-message ingestion pipeline.

Each new-mail event runs through a fixed sequence of gates before anything is
persisted:

1. Duplicate Message-ID           -> discard
2. Unresolvable sender            -> discard
3. Sender not a tracked user      -> discard (primary noise filter)
4. Sender account missing         -> discard (cache/store drift)
5. Unresolvable recipient         -> discard
6. Recipient not staff/admin      -> fallback admin (discard if none)
7. Normalise attachments, bodies and threading headers
8. Persist the inbound record
9. Update the sender's last communication (best effort)
10. Record an EMAIL_RECEIVED activity (best effort)
11. Remember the Message-ID

The pipeline never raises: every failure becomes a ``FAILED`` result so the
listener keeps running. Once a record exists the Message-ID is always
remembered, so a failing side effect cannot cause a second record.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from dealdesk.errors import AddressMissing

from .addresses import AddressResolver
from .audit_events import log_email_received
from .dedup_guard import DedupGuard
from .directory_cache import UserDirectoryCache
from .email_parser import InboundMail
from .ports import (
    Account,
    AccountStore,
    ActivityLog,
    AttachmentRecord,
    InboundMessageRecord,
    MessageDirection,
    MessageStatus,
)
from .provisioning import FallbackRecipientResolver


logger = logging.getLogger(__name__)

NO_CONTENT = "(No content)"
NO_SUBJECT = "(No Subject)"
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class ProcessingOutcome(str, Enum):
    """Terminal result of processing one message."""

    DUPLICATE = "duplicate"
    NO_SENDER = "no_sender"
    UNTRACKED_SENDER = "untracked_sender"
    SENDER_NOT_FOUND = "sender_not_found"
    NO_RECIPIENT = "no_recipient"
    NO_FALLBACK_RECIPIENT = "no_fallback_recipient"
    STORED = "stored"
    FAILED = "failed"


DISCARD_OUTCOMES = frozenset(
    {
        ProcessingOutcome.DUPLICATE,
        ProcessingOutcome.NO_SENDER,
        ProcessingOutcome.UNTRACKED_SENDER,
        ProcessingOutcome.SENDER_NOT_FOUND,
        ProcessingOutcome.NO_RECIPIENT,
        ProcessingOutcome.NO_FALLBACK_RECIPIENT,
    }
)


@dataclass
class ProcessingResult:
    outcome: ProcessingOutcome
    message_id: Optional[str] = None
    record_id: Optional[str] = None
    sender_id: Optional[str] = None
    recipient_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def stored(self) -> bool:
        return self.outcome == ProcessingOutcome.STORED


def _attachment_size(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError, OverflowError):
        return 0


def normalize_attachments(attachments: Optional[Iterable[Any]]) -> List[AttachmentRecord]:
    """Keep named attachments and fill in content type and size defaults."""
    normalized: List[AttachmentRecord] = []
    for attachment in attachments or []:
        if not isinstance(attachment, dict):
            continue
        filename = attachment.get("filename") or attachment.get("fileName")
        if not filename:
            continue
        size = _attachment_size(attachment.get("size", attachment.get("length")))
        normalized.append(
            AttachmentRecord(
                filename=str(filename),
                content_type=attachment.get("content_type")
                or attachment.get("contentType")
                or DEFAULT_CONTENT_TYPE,
                size=size,
                path=attachment.get("path") or None,
            )
        )
    return normalized


def normalize_bodies(text: Optional[str], html: Optional[str]) -> Tuple[str, str]:
    """Plain and rendered bodies, each falling back to the other."""
    return (text or html or NO_CONTENT, html or text or NO_CONTENT)


def normalize_in_reply_to(value: Any) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, (list, tuple)):
        return value[0] or None
    return value


def normalize_references(value: Any) -> Optional[str]:
    if not value:
        return None
    if isinstance(value, (list, tuple)):
        return " ".join(str(ref) for ref in value if ref) or None
    return value


class IngestionPipeline:
    """Turn new-mail events into inbound CRM records."""

    def __init__(
        self,
        *,
        directory: UserDirectoryCache,
        dedup: DedupGuard,
        store: AccountStore,
        activity_log: ActivityLog,
        fallback: FallbackRecipientResolver,
        resolver: Optional[AddressResolver] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.directory = directory
        self.dedup = dedup
        self.store = store
        self.activity_log = activity_log
        self.fallback = fallback
        self.resolver = resolver or AddressResolver()
        self._clock = clock
        self.counters: Counter = Counter()

    def stats(self) -> Dict[str, int]:
        processed = sum(self.counters.values())
        discarded = sum(self.counters[outcome] for outcome in DISCARD_OUTCOMES)
        return {
            "processed": processed,
            "stored": self.counters[ProcessingOutcome.STORED],
            "discarded": discarded,
            "failed": self.counters[ProcessingOutcome.FAILED],
        }

    async def process(self, mail: InboundMail) -> ProcessingResult:
        """Run one message through the pipeline; never raises."""
        try:
            result = await self._process(mail)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                f"Error processing incoming email: {exc}",
                exc_info=exc,
                extra={"message_id": mail.message_id, "uid": mail.uid},
            )
            result = ProcessingResult(
                outcome=ProcessingOutcome.FAILED,
                message_id=mail.message_id,
                error=str(exc),
            )
        self.counters[result.outcome] += 1
        return result

    async def _process(self, mail: InboundMail) -> ProcessingResult:
        message_id = mail.message_id

        if self.dedup.seen(message_id):
            logger.info(f"Email {message_id} already processed, skipping")
            return ProcessingResult(ProcessingOutcome.DUPLICATE, message_id=message_id)

        try:
            sender_address = self.resolver.resolve(mail.from_)
        except AddressMissing as exc:
            logger.warning(f"Could not extract sender address: {exc}", extra={"message_id": message_id})
            return ProcessingResult(ProcessingOutcome.NO_SENDER, message_id=message_id)

        if not self.directory.contains(sender_address):
            logger.info(f"Ignoring email from untracked address {sender_address}")
            return ProcessingResult(ProcessingOutcome.UNTRACKED_SENDER, message_id=message_id)

        sender = await self.store.find_account_by_address(sender_address)
        if sender is None:
            logger.warning(
                f"Sender {sender_address} is cached but has no account",
                extra={"message_id": message_id},
            )
            return ProcessingResult(ProcessingOutcome.SENDER_NOT_FOUND, message_id=message_id)

        try:
            recipient_address = self.resolver.resolve(mail.to)
        except AddressMissing as exc:
            logger.warning(f"Could not extract recipient address: {exc}", extra={"message_id": message_id})
            return ProcessingResult(
                ProcessingOutcome.NO_RECIPIENT, message_id=message_id, sender_id=sender.id
            )

        recipient = await self._resolve_recipient(recipient_address)
        if recipient is None:
            return ProcessingResult(
                ProcessingOutcome.NO_FALLBACK_RECIPIENT, message_id=message_id, sender_id=sender.id
            )

        record = self._build_record(mail, sender, recipient)
        record_id = await self.store.create_message_record(record)
        logger.info(
            f"Stored email from {sender_address}: {record.subject}",
            extra={"message_id": message_id, "record_id": record_id},
        )

        await self._touch_sender(sender, record)
        await log_email_received(
            self.activity_log,
            sender_id=sender.id,
            actor_id=sender.id,
            record_id=record_id,
            message_id=message_id,
            subject=record.subject,
            attachment_count=record.attachment_count,
        )

        self.dedup.record(message_id)
        return ProcessingResult(
            ProcessingOutcome.STORED,
            message_id=message_id,
            record_id=record_id,
            sender_id=sender.id,
            recipient_id=recipient.id,
        )

    async def _resolve_recipient(self, address: str) -> Optional[Account]:
        recipient = await self.directory.find_staff_or_admin(address)
        if recipient is not None:
            return recipient
        logger.info(f"Recipient {address} is not a staff account, using fallback admin")
        return await self.fallback.resolve()

    def _build_record(
        self, mail: InboundMail, sender: Account, recipient: Account
    ) -> InboundMessageRecord:
        body, html_body = normalize_bodies(mail.text, mail.html)
        attachments = normalize_attachments(mail.attachments)
        now = self._clock()
        return InboundMessageRecord(
            subject=mail.subject or NO_SUBJECT,
            body=body,
            html_body=html_body,
            direction=MessageDirection.INBOUND,
            status=MessageStatus.DELIVERED,
            sender_id=sender.id,
            recipient_id=recipient.id,
            message_id=mail.message_id,
            in_reply_to=normalize_in_reply_to(mail.in_reply_to),
            references=normalize_references(mail.references),
            attachments=attachments or None,
            delivered_at=now,
            sent_at=mail.date or now,
        )

    async def _touch_sender(self, sender: Account, record: InboundMessageRecord) -> None:
        try:
            await self.store.update_last_communication(
                sender.id, at=record.delivered_at, summary=record.subject
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                f"Failed to update last communication for {sender.email}",
                exc_info=exc,
            )


__all__ = [
    "DISCARD_OUTCOMES",
    "IngestionPipeline",
    "ProcessingOutcome",
    "ProcessingResult",
    "normalize_attachments",
    "normalize_bodies",
    "normalize_in_reply_to",
    "normalize_references",
]
