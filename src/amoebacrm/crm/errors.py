"""Error kinds raised by the AmoebaCRM connector.

All are rooted at ConnectorError. The Sync Engine catches them per record,
logs them with the lead id attached, and counts them; none escapes a pass.
"""

from __future__ import annotations


class ConnectorError(Exception):
    """Base class for connector failures."""


class RemoteRejection(ConnectorError):
    """AmoebaCRM answered with a non-success status code.

    Args:
        message: Human-readable message extracted from the error body.
        status_code: HTTP status code of the response.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.contact_id: int | None = None

    def set_contact_id(self, contact_id: int) -> RemoteRejection:
        """Attach the local lead id this rejection belongs to."""
        self.contact_id = contact_id
        return self


class RemoteTimeout(ConnectorError):
    """The request did not complete in time, even after retries.

    Distinct from RemoteRejection: the remote state is unknown, so callers
    must not assume the write failed.
    """


class MappingGapError(ConnectorError):
    """A local field value has no remote translation (e.g. unknown country)."""

    def __init__(self, field: str, value: str) -> None:
        super().__init__(f"Cannot map {field}={value!r} to an AmoebaCRM value")
        self.field = field
        self.value = value


class PersistenceError(ConnectorError):
    """Reading or writing the local lead store or identity ledger failed."""
