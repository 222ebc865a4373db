"""Inbound mail event model and RFC822 parser.

``InboundMail`` is the "new message" event the pipeline consumes. Its address
and threading fields deliberately keep the loose shapes mail clients produce
(strings, lists, objects) because normalisation is the pipeline's job.
``MailParser`` builds that event from the raw bytes fetched over IMAP.

Design notes:
- Uses the standard library ``email`` package with the modern policy
- Attachment metadata only; payloads are sized and discarded
- Messages without a Message-ID keep ``message_id=None`` so they are never
  deduplicated
"""

from __future__ import annotations

import logging
from datetime import datetime
from email import message_from_bytes
from email.message import EmailMessage as StdEmailMessage
from email.policy import default as email_policy
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


logger = logging.getLogger(__name__)


class InboundMail(BaseModel):
    """A new-message event as delivered by the mailbox connection."""

    model_config = ConfigDict(populate_by_name=True)

    from_: Any = Field(default=None, alias="from", description="Sender field, any supported shape")
    to: Any = Field(default=None, description="Recipient field, any supported shape")
    subject: Optional[str] = None
    text: Optional[str] = Field(default=None, description="Plain text body")
    html: Optional[str] = Field(default=None, description="Rendered HTML body")
    message_id: Optional[str] = None
    in_reply_to: Optional[Union[str, List[str]]] = None
    references: Optional[Union[str, List[str]]] = None
    attachments: List[Dict[str, Any]] = Field(default_factory=list)
    date: Optional[datetime] = None
    uid: Optional[int] = Field(default=None, description="IMAP UID when fetched over IMAP")

    @field_validator("attachments", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("message_id", mode="before")
    @classmethod
    def _blank_id_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class MailParser:
    """Parse RFC822/MIME bytes into :class:`InboundMail` events."""

    def parse(self, raw_message: bytes, *, uid: Optional[int] = None) -> InboundMail:
        """Parse a raw message.

        Raises:
            ValueError: If the bytes cannot be parsed as a message
        """
        try:
            msg = message_from_bytes(raw_message, policy=email_policy)
            text, html = self._extract_body(msg)
            return InboundMail(
                **{
                    "from": self._extract_addresses(msg, "From"),
                    "to": self._extract_addresses(msg, "To"),
                    "subject": self._extract_subject(msg),
                    "text": text,
                    "html": html,
                    "message_id": self._strip_id(msg.get("Message-ID")),
                    "in_reply_to": self._strip_id(msg.get("In-Reply-To")),
                    "references": self._extract_references(msg),
                    "attachments": self._extract_attachments(msg),
                    "date": self._extract_date(msg),
                    "uid": uid,
                }
            )
        except Exception as e:
            logger.error(f"Failed to parse email message: {e}", extra={"uid": uid})
            raise ValueError(f"Email parsing failed: {e}") from e

    def _extract_addresses(self, msg: StdEmailMessage, header: str) -> List[Dict[str, str]]:
        values = msg.get_all(header, [])
        result = []
        for name, addr in getaddresses([str(value) for value in values]):
            if not addr or "@" not in addr:
                continue
            result.append({"address": addr.strip(), "name": name.strip()})
        return result

    def _extract_subject(self, msg: StdEmailMessage) -> Optional[str]:
        subject = msg.get("Subject")
        if subject is None:
            return None
        subject = str(subject).strip()
        return subject or None

    def _strip_id(self, value: Any) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip().strip("<>").strip()
        return value or None

    def _extract_references(self, msg: StdEmailMessage) -> List[str]:
        references = msg.get("References")
        if not references:
            return []
        return [ref.strip("<>").strip() for ref in str(references).split() if ref.strip("<>").strip()]

    def _extract_date(self, msg: StdEmailMessage) -> Optional[datetime]:
        date_header = msg.get("Date")
        if not date_header:
            return None
        try:
            return parsedate_to_datetime(str(date_header))
        except (TypeError, ValueError) as e:
            logger.warning(f"Failed to parse Date header '{date_header}': {e}")
            return None

    def _extract_body(self, msg: StdEmailMessage) -> Tuple[Optional[str], Optional[str]]:
        """Return the first text/plain and text/html bodies."""
        body_plain = None
        body_html = None

        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            if part.get_content_disposition() == "attachment":
                continue
            content_type = part.get_content_type()
            try:
                if content_type == "text/plain" and body_plain is None:
                    body_plain = part.get_content()
                elif content_type == "text/html" and body_html is None:
                    body_html = part.get_content()
            except Exception as e:
                logger.warning(f"Failed to extract {content_type} body: {e}")

        return body_plain, body_html

    def _extract_attachments(self, msg: StdEmailMessage) -> List[Dict[str, Any]]:
        attachments: List[Dict[str, Any]] = []
        if not msg.is_multipart():
            return attachments

        for part in msg.walk():
            if part.get_content_disposition() not in ("attachment", "inline"):
                continue
            filename = part.get_filename()
            if not filename:
                continue
            payload = part.get_payload(decode=True)
            attachments.append(
                {
                    "filename": filename,
                    "content_type": part.get_content_type(),
                    "size": len(payload) if payload else 0,
                }
            )
        return attachments


__all__ = ["InboundMail", "MailParser"]
