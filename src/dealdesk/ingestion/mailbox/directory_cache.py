"""In-memory directory of tracked user addresses.

The listener only ingests mail sent by CRM clients. Checking every message
against the store would cost a query per piece of internet noise, so the
addresses of tracked accounts are held as an immutable snapshot that is
replaced wholesale on refresh.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Collection, FrozenSet, Optional

from dealdesk.errors import DirectoryRefreshError

from .ports import SYSTEM_ROLES, TRACKED_ROLES, Account, AccountRole, AccountStore


logger = logging.getLogger(__name__)


class UserDirectoryCache:
    """Snapshot of tracked addresses plus staff lookups through the store."""

    def __init__(
        self,
        store: AccountStore,
        *,
        tracked_roles: Collection[AccountRole] = TRACKED_ROLES,
    ) -> None:
        self._store = store
        self._tracked_roles = frozenset(tracked_roles)
        self._addresses: FrozenSet[str] = frozenset()
        self.last_refreshed_at: Optional[datetime] = None

    async def refresh(self) -> int:
        """Reload tracked addresses and swap the snapshot.

        Returns:
            Number of addresses in the new snapshot

        Raises:
            DirectoryRefreshError: If the store query fails; the previous
                snapshot stays in place
        """
        try:
            addresses = await self._store.list_addresses(self._tracked_roles)
        except Exception as exc:  # noqa: BLE001
            raise DirectoryRefreshError(
                f"Failed to load user addresses: {exc}",
                details={"kept_snapshot_size": len(self._addresses)},
            ) from exc

        snapshot = frozenset(
            address.strip().lower() for address in addresses if address and address.strip()
        )
        self._addresses = snapshot
        self.last_refreshed_at = datetime.now(timezone.utc)
        logger.info(f"Loaded {len(snapshot)} user addresses for filtering")
        return len(snapshot)

    def contains(self, address: Optional[str]) -> bool:
        if not address:
            return False
        return address.strip().lower() in self._addresses

    async def find_staff_or_admin(self, address: str) -> Optional[Account]:
        """Resolve a staff/admin account by address (not cached)."""
        return await self._store.find_account_by_address_and_roles(
            address.strip().lower(), SYSTEM_ROLES
        )

    @property
    def size(self) -> int:
        return len(self._addresses)

    def __len__(self) -> int:
        return len(self._addresses)

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and self.contains(address)


__all__ = ["UserDirectoryCache"]
