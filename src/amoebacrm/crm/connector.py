"""CRM connector abstract base class -- the capability set the SyncEngine needs.

The SyncEngine only depends on this interface. AmoebaCrmClient is the one
production implementation; tests substitute AsyncMock(spec=CrmConnector).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class CrmConnector(ABC):
    """Abstract interface for a remote contact store.

    Methods:
        is_authorized: Whether the connector holds usable credentials.
        get_available_lead_fields: Remote field catalogue keyed by field key.
        create_contact: Create a contact, return its remote id (or None).
        update_contact: Update a contact by remote id, return the confirmed id (or None).
        retrieve_contacts: Fetch contact records, optionally one page at a time.
    """

    @abstractmethod
    def is_authorized(self) -> bool:
        """Return True if remote calls may be made."""
        ...

    @abstractmethod
    async def get_available_lead_fields(self) -> dict[str, dict[str, Any]]:
        """Return the remote contact fields as {key: {label, type, required, group}}."""
        ...

    @abstractmethod
    async def create_contact(self, payload: dict[str, Any]) -> str | None:
        """Create a contact from a mapped payload, return the new remote id."""
        ...

    @abstractmethod
    async def update_contact(self, remote_id: str, payload: dict[str, Any]) -> str | None:
        """Update a contact, return the remote id the server confirmed."""
        ...

    @abstractmethod
    async def retrieve_contacts(
        self, page: int | None = None, limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Fetch contact records; no page/limit means everything in one request."""
        ...
