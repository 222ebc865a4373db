"""Inbound mail listener: mailbox connection, ingestion pipeline and controller."""

from .addresses import AddressResolver, resolve_address
from .audit_events import ActivityTypes, log_email_received
from .connection_manager import (
    ConnectionEvent,
    ConnectionMetrics,
    MailboxConnection,
    build_search_criteria,
)
from .dedup_guard import DedupGuard
from .directory_cache import UserDirectoryCache
from .email_parser import InboundMail, MailParser
from .pipeline import IngestionPipeline, ProcessingOutcome, ProcessingResult
from .ports import (
    Account,
    AccountRole,
    AccountStore,
    ActivityLog,
    AttachmentRecord,
    InboundMessageRecord,
    MessageDirection,
    MessageStatus,
)
from .provisioning import FallbackRecipientResolver
from .reconnect import ConnectionState, ReconnectSupervisor, RetryStrategy
from .service import EmailListenerService, ListenerStatus
from .sqlite_store import SqliteActivityLog, SqliteCrmStore

__all__ = [
    "Account",
    "AccountRole",
    "AccountStore",
    "ActivityLog",
    "ActivityTypes",
    "AddressResolver",
    "AttachmentRecord",
    "ConnectionEvent",
    "ConnectionMetrics",
    "ConnectionState",
    "DedupGuard",
    "EmailListenerService",
    "FallbackRecipientResolver",
    "InboundMail",
    "InboundMessageRecord",
    "IngestionPipeline",
    "ListenerStatus",
    "MailParser",
    "MailboxConnection",
    "MessageDirection",
    "MessageStatus",
    "ProcessingOutcome",
    "ProcessingResult",
    "ReconnectSupervisor",
    "RetryStrategy",
    "SqliteActivityLog",
    "SqliteCrmStore",
    "UserDirectoryCache",
    "build_search_criteria",
    "log_email_received",
    "resolve_address",
]
