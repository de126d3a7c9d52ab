"""Field mapping between local lead fields and AmoebaCRM contact fields.

Defines:
- ADDRESS_FIELDS: Local keys that AmoebaCRM expects inside one `address` composite.
- MappingGapPolicy: What to do with a value that has no remote translation.
- map_local_to_remote(): Local field dict -> AmoebaCRM push payload.
- map_remote_to_local(): AmoebaCRM contact record -> local field dict (pull side).
- populate_lead_fields(): Applies the configured lead field mapping to a local record.
- build_query_field_list() / parse_selector(): Field selection clause for lead queries.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

import structlog

from src.amoebacrm.crm.countries import resolve_country_code, resolve_country_name
from src.amoebacrm.crm.errors import MappingGapError

logger = structlog.get_logger(__name__)


# ── Address Composite ───────────────────────────────────────────────────────

ADDRESS_FIELDS: frozenset[str] = frozenset(
    {
        "country_code",
        "administrative_area",
        "locality",
        "postal_code",
        "address_line1",
        "address_line2",
    }
)

ADDRESS_KEY = "address"
QUERY_FIELD_PREFIX = "l."


class MappingGapPolicy(str, Enum):
    """Handling of field values that cannot be translated for AmoebaCRM."""

    DROP = "drop"
    REJECT = "reject"
    DEFAULT = "default"


# ── Conversion Functions ───────────────────────────────────────────────────


def map_local_to_remote(
    fields: Mapping[str, Any],
    gap_policy: MappingGapPolicy = MappingGapPolicy.DROP,
    default_country_code: str | None = None,
) -> dict[str, Any]:
    """Convert a local field dict to the AmoebaCRM push payload.

    Every non-address field is wrapped as ``{key: {"value": value}}``. Address
    fields are gathered into a single ``{"address": {"value": {...}}}``
    composite, with ``country_code`` resolved from a country display name to
    its ISO alpha-2 code.

    Args:
        fields: Remote field keys to values (already passed through the lead
            field mapping).
        gap_policy: What to do when a country name cannot be resolved.
        default_country_code: Substitute code for MappingGapPolicy.DEFAULT.

    Returns:
        Dict suitable as the JSON body of a create or update request.

    Raises:
        MappingGapError: If gap_policy is REJECT and a value cannot be mapped.
    """
    mapped: dict[str, Any] = {}
    address: dict[str, Any] = {}

    for key, value in fields.items():
        if key not in ADDRESS_FIELDS:
            mapped[key] = {"value": value}
            continue

        if key == "country_code":
            code = resolve_country_code(value)
            if code is None:
                code = _handle_country_gap(value, gap_policy, default_country_code)
            if code is None:
                continue
            value = code

        address[key] = value

    if address:
        mapped[ADDRESS_KEY] = {"value": address}

    return mapped


def _handle_country_gap(
    value: Any,
    gap_policy: MappingGapPolicy,
    default_country_code: str | None,
) -> str | None:
    """Apply the mapping-gap policy to an unresolvable country name."""
    if gap_policy == MappingGapPolicy.REJECT:
        raise MappingGapError("country_code", str(value))

    if gap_policy == MappingGapPolicy.DEFAULT and default_country_code:
        logger.info(
            "field_mapping.country_defaulted",
            country=value,
            default=default_country_code,
        )
        return default_country_code

    logger.warning("field_mapping.country_unresolved", country=value)
    return None


def map_remote_to_local(
    record: Mapping[str, Any],
    lead_fields: Mapping[str, str],
) -> dict[str, Any]:
    """Convert an AmoebaCRM contact record to local lead fields.

    Inverse of map_local_to_remote() + populate_lead_fields(): unwraps
    ``{"value": ...}`` wrappers, flattens the address composite and turns
    ISO country codes back into display names where the table knows them.
    Remote keys without a configured local counterpart are ignored.

    Args:
        record: Contact record from the retrieve endpoint (``id`` is skipped).
        lead_fields: Local field key -> remote field key mapping.

    Returns:
        Dict of local field keys to values.
    """
    remote_to_local = {remote: local for local, remote in lead_fields.items()}

    flat: dict[str, Any] = {}
    for key, value in record.items():
        if key == "id":
            continue
        value = _unwrap(value)
        if key == ADDRESS_KEY and isinstance(value, Mapping):
            for sub_key, sub_value in value.items():
                flat[sub_key] = _unwrap(sub_value)
        else:
            flat[key] = value

    if "country_code" in flat:
        flat["country_code"] = resolve_country_name(flat["country_code"]) or flat["country_code"]

    result: dict[str, Any] = {}
    for remote_key, value in flat.items():
        local_key = remote_to_local.get(remote_key)
        if local_key is not None and value is not None:
            result[local_key] = value

    return result


def _unwrap(value: Any) -> Any:
    """Extract the plain value from an AmoebaCRM ``{"value": ...}`` wrapper."""
    if isinstance(value, Mapping) and set(value.keys()) == {"value"}:
        return value["value"]
    return value


def populate_lead_fields(
    local_fields: Mapping[str, Any],
    lead_fields: Mapping[str, str],
) -> dict[str, Any]:
    """Select and rename local field values according to the lead field mapping.

    Args:
        local_fields: The local record's field values.
        lead_fields: Ordered local field key -> remote field key mapping.

    Returns:
        Dict of remote field keys to values, skipping empty values.
    """
    populated: dict[str, Any] = {}
    for local_key, remote_key in lead_fields.items():
        value = local_fields.get(local_key)
        if value is None or value == "":
            continue
        populated[remote_key] = value
    return populated


# ── Query Field Selection ───────────────────────────────────────────────────


def build_query_field_list(
    configured_fields: Iterable[str],
    prefix: str = QUERY_FIELD_PREFIX,
) -> str:
    """Join configured local field names into a lead query selection clause.

    ``["email", "firstname"]`` becomes ``"l.email, l.firstname"``; empty
    input gives an empty string.
    """
    return ", ".join(f"{prefix}{name}" for name in configured_fields)


def parse_selector(selector: str, prefix: str = QUERY_FIELD_PREFIX) -> list[str]:
    """Recover local field names from a selection clause built above."""
    names: list[str] = []
    for part in selector.split(","):
        part = part.strip()
        if not part:
            continue
        if part.startswith(prefix):
            part = part[len(prefix):]
        names.append(part)
    return names
