"""AmoebaCRM integration layer -- remote contact store behind a capability interface.

Provides the CrmConnector interface with its AmoebaCRM implementation:
- AmoebaCrmClient: Endpoint builders, field discovery, create/update/retrieve
- AmoebaTransport: httpx transport with tenacity retry and status handling
- Field mapping: Local lead fields <-> AmoebaCRM wrapped payloads, country codes
- Error kinds: RemoteRejection, RemoteTimeout, MappingGapError, PersistenceError
"""

from src.amoebacrm.crm.client import AmoebaCrmClient
from src.amoebacrm.crm.connector import CrmConnector
from src.amoebacrm.crm.countries import resolve_country_code, resolve_country_name
from src.amoebacrm.crm.errors import (
    ConnectorError,
    MappingGapError,
    PersistenceError,
    RemoteRejection,
    RemoteTimeout,
)
from src.amoebacrm.crm.field_mapping import (
    ADDRESS_FIELDS,
    MappingGapPolicy,
    build_query_field_list,
    map_local_to_remote,
    map_remote_to_local,
)
from src.amoebacrm.crm.transport import AmoebaTransport, RawResponse, RequestSettings

__all__ = [
    "CrmConnector",
    "AmoebaCrmClient",
    "AmoebaTransport",
    "RequestSettings",
    "RawResponse",
    "ConnectorError",
    "RemoteRejection",
    "RemoteTimeout",
    "MappingGapError",
    "PersistenceError",
    "ADDRESS_FIELDS",
    "MappingGapPolicy",
    "map_local_to_remote",
    "map_remote_to_local",
    "build_query_field_list",
    "resolve_country_code",
    "resolve_country_name",
]
