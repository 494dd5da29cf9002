"""Credential definition selection and credential attribute building."""

from __future__ import annotations

import logging
from typing import Any

from packaging.version import InvalidVersion, Version

from ssi_demo.errors import ErrorCode, FlowError

logger = logging.getLogger("ssi_demo.schemas")

CARD_IMAGE_ATTRIBUTES = ("card_front", "card_back")

_UNPARSABLE = Version("0")


def schema_version(cred_def: dict[str, Any]) -> str:
    """Return the schema version a credential definition is bound to.

    Agents report it in one of three places depending on the endpoint.
    """
    if cred_def.get("schema_version"):
        return str(cred_def["schema_version"])
    schema = cred_def.get("schema")
    if isinstance(schema, dict) and schema.get("version"):
        return str(schema["version"])
    return str(cred_def.get("version", ""))


def _version_key(cred_def: dict[str, Any]) -> Version:
    raw = schema_version(cred_def)
    try:
        return Version(raw)
    except InvalidVersion:
        logger.debug("Unparsable schema version %r on credential definition %s", raw, cred_def.get("id"))
        return _UNPARSABLE


def sort_credential_definitions(cred_defs: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Stable ascending sort by schema version ("1.2" < "1.10")."""
    return sorted(cred_defs, key=_version_key)


def newest_credential_definition(cred_defs: list[dict[str, Any]], issuer: str = "") -> dict[str, Any]:
    """Pick the credential definition with the highest schema version.

    Among equal versions the last one in the agent's list wins.
    """
    if not cred_defs:
        raise FlowError(
            ErrorCode.NO_CREDENTIAL_DEFINITIONS,
            f"No credential definitions were found for issuer {issuer or 'this agent'}",
        )
    return sort_credential_definitions(cred_defs)[-1]


def schema_id_of(cred_def: dict[str, Any]) -> str | None:
    if cred_def.get("schema_id"):
        return cred_def["schema_id"]
    schema = cred_def.get("schema")
    if isinstance(schema, dict):
        return schema.get("id")
    return None


def schema_attribute_names(schema: dict[str, Any]) -> list[str]:
    return list(schema.get("attr_names") or schema.get("attrs") or [])


async def build_credential_attributes(
    attr_names: list[str],
    personal_info: dict[str, Any] | None,
    card_renderer,
) -> dict[str, str]:
    """Fill every schema attribute from the user's personal info.

    Card image attributes are rendered; everything else must be a string or a
    number in ``personal_info``.
    """
    personal_info = personal_info or {}
    attributes: dict[str, str] = {}
    for attr_name in attr_names:
        if attr_name == "card_front":
            attributes[attr_name] = await card_renderer.create_card_front(personal_info)
        elif attr_name == "card_back":
            attributes[attr_name] = await card_renderer.create_card_back(personal_info)
        else:
            value = personal_info.get(attr_name)
            if isinstance(value, bool) or not isinstance(value, (str, int, float)):
                raise FlowError(
                    ErrorCode.INVALID_USER_ATTRIBUTES,
                    f"User record was missing data '{attr_name}', which is required for creating a credential",
                )
            attributes[attr_name] = str(value)
    return attributes


def connection_target(agent_name: str) -> dict[str, str]:
    """Address an agent by URL when given one, by name otherwise."""
    if "http" in agent_name.lower():
        return {"url": agent_name}
    return {"name": agent_name}


def newest_first(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Schemas or credential definitions ordered highest version first."""
    return list(reversed(sort_credential_definitions(records)))
