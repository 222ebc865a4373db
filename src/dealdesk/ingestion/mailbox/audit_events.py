"""Activity feed events emitted by the mail listener."""

from __future__ import annotations

import logging
from typing import Optional

from .ports import ActivityLog


logger = logging.getLogger(__name__)


class ActivityTypes:
    """Activity types written to the CRM activity feed."""

    EMAIL_RECEIVED = "EMAIL_RECEIVED"


async def log_email_received(
    activity_log: ActivityLog,
    *,
    sender_id: str,
    actor_id: str,
    record_id: str,
    message_id: Optional[str],
    subject: str,
    attachment_count: int,
) -> bool:
    """Record an ``EMAIL_RECEIVED`` activity for the sender.

    Activity logging is fire-and-forget: failures are logged and reported via
    the return value, never raised.

    Args:
        activity_log: Activity feed collaborator
        sender_id: Account the activity is about
        actor_id: Account credited with the activity
        record_id: Identifier of the persisted inbound record
        message_id: Protocol Message-ID, if any
        subject: Normalised subject line
        attachment_count: Number of attachments kept on the record

    Returns:
        True if the activity was recorded
    """
    try:
        await activity_log.record(
            type=ActivityTypes.EMAIL_RECEIVED,
            title="Email Received",
            description=f"Email received: {subject}",
            subject_account_id=sender_id,
            actor_account_id=actor_id,
            metadata={
                "email_id": record_id,
                "message_id": message_id,
                "subject": subject,
                "has_attachments": attachment_count > 0,
                "attachment_count": attachment_count,
            },
        )
    except Exception as exc:  # noqa: BLE001
        logger.error(
            f"Failed to record activity for email {record_id}",
            exc_info=exc,
            extra={"message_id": message_id},
        )
        return False
    return True


__all__ = ["ActivityTypes", "log_email_received"]
