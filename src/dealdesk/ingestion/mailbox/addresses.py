"""Canonical address extraction for sender/recipient fields.

Mail events carry addresses in several shapes depending on where they came
from: a bare string, ``"Display Name <addr>"``, an object or mapping with an
``address`` member, or a list of any of those. ``AddressResolver`` reduces all
of them to one lowercase, trimmed address, which is the form used for every
directory lookup and store query.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

from dealdesk.errors import AddressMissing


logger = logging.getLogger(__name__)

_BRACKETED = re.compile(r"<\s*([^<>]+?)\s*>")


class AddressResolver:
    """Resolve raw address fields to canonical addresses.

    Only the first element of a list is considered: the first-listed sender or
    recipient is authoritative.
    """

    def resolve(self, field: Any) -> str:
        """Return the canonical address held by ``field``.

        Raises:
            AddressMissing: If no address can be read from ``field``
        """
        if field is None:
            raise AddressMissing("Address field is empty")

        if isinstance(field, (list, tuple)):
            if not field:
                raise AddressMissing("Address list is empty")
            field = field[0]

        if isinstance(field, str):
            return self._from_string(field)

        address = self._address_member(field)
        if address is None:
            raise AddressMissing(
                "Unsupported address format",
                details={"type": type(field).__name__},
            )
        return self._from_string(address)

    def _address_member(self, field: Any) -> Optional[str]:
        if isinstance(field, dict):
            value = field.get("address")
        else:
            value = getattr(field, "address", None)
        return value if isinstance(value, str) else None

    def _from_string(self, value: str) -> str:
        match = _BRACKETED.search(value)
        candidate = match.group(1) if match else value
        candidate = candidate.strip().strip("<>").strip().lower()
        if not candidate:
            raise AddressMissing("Address string is blank")
        return candidate


_default_resolver = AddressResolver()


def resolve_address(field: Any) -> Optional[str]:
    """Non-raising variant of :meth:`AddressResolver.resolve`."""
    try:
        return _default_resolver.resolve(field)
    except AddressMissing as exc:
        logger.debug(f"Could not resolve address: {exc.message}")
        return None


__all__ = ["AddressResolver", "resolve_address"]
