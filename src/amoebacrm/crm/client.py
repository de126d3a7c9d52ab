"""AmoebaCRM client -- CrmConnector implementation over AmoebaTransport.

Endpoints (all JSON-formatted via ``?_format=json``):
- GET   /api/contact/fields     field catalogue
- POST  /api/contact/create     create a contact
- PATCH /contact/{id}           update a contact
- GET   /api/retrieve/contact   list contacts
"""

from __future__ import annotations

from typing import Any

import structlog

from src.amoebacrm.config import Settings
from src.amoebacrm.crm.connector import CrmConnector
from src.amoebacrm.crm.errors import ConnectorError, RemoteRejection
from src.amoebacrm.crm.transport import AmoebaTransport, RequestSettings

logger = structlog.get_logger(__name__)

_FORMAT = "?_format=json"
_FIELD_GROUP = "Contact"


class AmoebaCrmClient(CrmConnector):
    """Talks to one AmoebaCRM instance.

    Args:
        instance_url: Base URL of the AmoebaCRM instance.
        transport: Configured AmoebaTransport (carries the access token).
        request_settings: Encoding options used for every call.
    """

    def __init__(
        self,
        instance_url: str,
        transport: AmoebaTransport,
        request_settings: RequestSettings | None = None,
    ) -> None:
        self._instance_url = instance_url.rstrip("/")
        self._transport = transport
        self._request_settings = request_settings or RequestSettings(encode_parameters="json")
        self._fields_cache: dict[str, dict[str, Any]] | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> AmoebaCrmClient:
        """Build a client and its transport from application settings."""
        transport = AmoebaTransport(
            access_token=settings.AMOEBACRM_ACCESS_TOKEN,
            timeout=settings.AMOEBACRM_REQUEST_TIMEOUT,
            max_retries=settings.AMOEBACRM_MAX_RETRIES,
        )
        return cls(settings.AMOEBACRM_INSTANCE_URL, transport)

    # ── Endpoints ───────────────────────────────────────────────────────────

    def endpoint_get_fields(self) -> str:
        return f"{self._instance_url}/api/contact/fields{_FORMAT}"

    def endpoint_create_contact(self) -> str:
        return f"{self._instance_url}/api/contact/create{_FORMAT}"

    def endpoint_update_contact(self, remote_id: str) -> str:
        return f"{self._instance_url}/contact/{remote_id}{_FORMAT}"

    def endpoint_retrieve_contacts(self) -> str:
        return f"{self._instance_url}/api/retrieve/contact{_FORMAT}"

    # ── CrmConnector ────────────────────────────────────────────────────────

    def is_authorized(self) -> bool:
        return bool(self._instance_url) and self._transport.has_token

    async def get_available_lead_fields(self) -> dict[str, dict[str, Any]]:
        """Fetch the contact field catalogue, cached per client instance.

        Returns an empty dict when unauthorized or when the request fails;
        failures are logged, not raised.
        """
        if not self.is_authorized():
            return {}
        if self._fields_cache:
            return self._fields_cache

        try:
            response = await self._transport.request(
                self.endpoint_get_fields(), {}, "GET", self._request_settings
            )
        except ConnectorError as exc:
            logger.error("amoebacrm.fields_failed", error=str(exc))
            return {}

        remote_fields = (response or {}).get("fields") if isinstance(response, dict) else None
        if not remote_fields:
            return {}

        lead_fields = {
            key: {
                "label": label,
                "type": "string",
                "required": key == "email",
                "group": _FIELD_GROUP,
            }
            for key, label in remote_fields.items()
        }
        self._fields_cache = lead_fields
        logger.info("amoebacrm.fields_loaded", count=len(lead_fields))
        return lead_fields

    async def create_contact(self, payload: dict[str, Any]) -> str | None:
        """POST a mapped payload; return the id AmoebaCRM assigned, if any."""
        response = await self._transport.request(
            self.endpoint_create_contact(), payload, "POST", self._request_settings
        )
        return _response_id(response)

    async def update_contact(self, remote_id: str, payload: dict[str, Any]) -> str | None:
        """PATCH a contact; return the id echoed back by AmoebaCRM, if any."""
        response = await self._transport.request(
            self.endpoint_update_contact(remote_id), payload, "PATCH", self._request_settings
        )
        return _response_id(response)

    async def retrieve_contacts(
        self, page: int | None = None, limit: int | None = None
    ) -> list[dict[str, Any]]:
        """GET contact records, optionally one page of them.

        Raises:
            RemoteRejection: If the response is not a list of records.
        """
        params: dict[str, Any] = {}
        if page is not None:
            params["page"] = page
        if limit is not None:
            params["limit"] = limit

        response = await self._transport.request(
            self.endpoint_retrieve_contacts(), params, "GET", self._request_settings
        )
        if response is None:
            return []
        if isinstance(response, dict) and isinstance(response.get("contacts"), list):
            response = response["contacts"]
        if not isinstance(response, list):
            raise RemoteRejection("Unexpected contact list payload")
        return response

    async def aclose(self) -> None:
        await self._transport.aclose()


def _response_id(response: Any) -> str | None:
    """Read ``id`` from a parsed create/update response."""
    if isinstance(response, dict):
        remote_id = response.get("id")
        if remote_id not in (None, ""):
            return str(remote_id)
    return None
