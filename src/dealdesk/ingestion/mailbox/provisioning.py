"""Fallback recipient resolution.

When an inbound message is addressed to someone who is not a staff or admin
account (a shared inbox alias, a typo), the record still needs a recipient.
The first ADMIN account serves as that fallback. Creating an admin account
when none exists is opt-in: it only happens with ``auto_provision_fallback``
enabled, and the generated one-time credential goes to the keyring, never to
the log.
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from dealdesk.configuration.settings import SecretStore
from dealdesk.errors import ProvisioningError

from .ports import Account, AccountRole, AccountStore


logger = logging.getLogger(__name__)

FALLBACK_FIRST_NAME = "System"
FALLBACK_LAST_NAME = "Admin"


def fallback_secret_key(address: str) -> str:
    """Keyring entry name holding a provisioned admin's one-time credential."""
    return f"fallback-admin:{address}"


class FallbackRecipientResolver:
    """Find, and optionally provision, the fallback admin recipient."""

    def __init__(
        self,
        store: AccountStore,
        *,
        secret_store: Optional[SecretStore] = None,
        allow_provisioning: bool = False,
        admin_address: Optional[str] = None,
    ) -> None:
        self._store = store
        self._secret_store = secret_store
        self.allow_provisioning = allow_provisioning
        self.admin_address = admin_address.strip().lower() if admin_address else None
        self.provisioned: Optional[Account] = None

    async def resolve(self) -> Optional[Account]:
        """Return the fallback admin, or None when there is none to use.

        Raises:
            ProvisioningError: If provisioning is enabled and fails
        """
        admin = await self._store.find_first_account_with_roles({AccountRole.ADMIN})
        if admin is not None:
            return admin

        if not self.allow_provisioning:
            logger.warning(
                "No ADMIN account exists to receive unaddressed mail; "
                "create one or enable auto_provision_fallback"
            )
            return None

        return await self._provision()

    async def _provision(self) -> Account:
        if not self.admin_address:
            raise ProvisioningError("No address configured for the fallback admin account")
        if self._secret_store is None:
            raise ProvisioningError("A secret store is required to provision a fallback admin")

        credential = secrets.token_urlsafe(32)
        key = fallback_secret_key(self.admin_address)
        try:
            self._secret_store.set_secret(key, credential)
        except Exception as exc:  # noqa: BLE001
            raise ProvisioningError(
                f"Could not store fallback admin credential: {exc}",
                details={"address": self.admin_address},
            ) from exc

        try:
            account = await self._store.create_account(
                email=self.admin_address,
                role=AccountRole.ADMIN,
                first_name=FALLBACK_FIRST_NAME,
                last_name=FALLBACK_LAST_NAME,
                credential=credential,
            )
        except Exception as exc:  # noqa: BLE001
            self._secret_store.delete_secret(key)
            raise ProvisioningError(
                f"Could not create fallback admin account: {exc}",
                details={"address": self.admin_address},
            ) from exc

        self.provisioned = account
        logger.warning(
            f"Provisioned fallback admin account {account.email}; "
            f"one-time credential stored in keyring entry '{key}'"
        )
        return account


__all__ = ["FallbackRecipientResolver", "fallback_secret_key"]
