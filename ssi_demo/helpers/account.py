"""Bank account signup backed by a driver's license and an employment badge.

The signup proof request asks for attributes from two upstream issuers, a
DMV and an HR department. Requested attribute keys containing ``mdl`` are
restricted to the DMV's credential definitions, keys containing ``hr`` to
HR's. The issuers are found through tagged connections, which lets the agent
answer ``/credential_definitions?route=trustedDMV:true``.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from ssi_demo.errors import ErrorCode, ProofValidationError
from ssi_demo.helpers.base import check_template_path, load_template, proof_attributes

logger = logging.getLogger("ssi_demo.helpers.account")

PERMITTED_COUNTRIES = frozenset({"united states", "us"})
INSTITUTION_NUMBER = "bbcu123"
_DOB_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%Y/%m/%d")


@dataclass(frozen=True)
class AccountHelperConfig:
    dmv_invitation_url: str
    hr_invitation_url: str
    proof_schema_path: str
    dmv_route: str = "trustedDMV:true"
    hr_route: str = "trustedHR:true"

    def __post_init__(self) -> None:
        if not self.dmv_invitation_url:
            raise ValueError(f"Invalid DMV invitation {self.dmv_invitation_url!r}")
        if not self.hr_invitation_url:
            raise ValueError(f"Invalid HR invitation {self.hr_invitation_url!r}")
        check_template_path(self.proof_schema_path)


def _cred_def_restrictions(routed: Any) -> list[dict[str, str]]:
    """Flatten a routed ``/credential_definitions`` answer into restrictions."""
    restrictions = []
    for agent in (routed or {}).get("agents") or []:
        for item in ((agent.get("results") or {}).get("items")) or []:
            restrictions.append({"cred_def_id": item["id"]})
    return restrictions


def dob_to_days(dob: str) -> int:
    """Days since the Unix epoch for a date of birth, for predicate proofs."""
    text = str(dob).strip()
    parsed = None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        for fmt in _DOB_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        raise ProofValidationError("An invalid attestation of date of birth was provided")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() // 86400)


class AccountSignupHelper:
    def __init__(self, config: AccountHelperConfig, agent: Any) -> None:
        self.config = config
        self.agent = agent

    async def setup(self) -> None:
        """Make sure tagged connections to both issuers exist."""
        for url, route in (
            (self.config.dmv_invitation_url, self.config.dmv_route),
            (self.config.hr_invitation_url, self.config.hr_route),
        ):
            key, _, value = route.partition(":")
            connection = await self.agent.accept_invitation(url, {key: value})
            logger.info("Connection %s established, state %s", connection.get("id"), connection.get("state"))

    async def cleanup(self) -> None:
        """Delete every connection made to the issuers."""
        urls = [self.config.hr_invitation_url, self.config.dmv_invitation_url]
        connections = await self.agent.get_connections({
            "$or": [
                {"remote.name": {"$in": urls}},
                {"remote.url": {"$in": urls}},
            ],
        })
        logger.info("Cleaning up %d issuer connections", len(connections))
        for connection in connections:
            await self.agent.delete_connection(connection["id"])

    async def get_proof_schema(self, restrictions: list[dict] | None = None) -> dict[str, Any]:
        template = await load_template(check_template_path(self.config.proof_schema_path))

        logger.info("Making sure we still have connections to %s and %s",
                    self.config.dmv_invitation_url, self.config.hr_invitation_url)
        await self.setup()

        dmv_restrictions = _cred_def_restrictions(
            await self.agent.get_credential_definitions(route=self.config.dmv_route)
        )
        hr_restrictions = _cred_def_restrictions(
            await self.agent.get_credential_definitions(route=self.config.hr_route)
        )
        logger.debug("DMV restrictions: %s, HR restrictions: %s", dmv_restrictions, hr_restrictions)

        requested: dict[str, dict] = {}
        for key, attr in (template.get("requested_attributes") or {}).items():
            lowered = key.lower()
            if "mdl" in lowered:
                attr_restrictions = dmv_restrictions
            elif "hr" in lowered:
                attr_restrictions = hr_restrictions
            else:
                attr_restrictions = []
            requested[attr["name"]] = {"name": attr["name"], "restrictions": list(attr_restrictions)}

        return {
            "name": template["name"],
            "version": f"{template['version']}{int(time.time() * 1000)}",
            "requested_attributes": requested,
        }

    async def check_proof(self, verification: dict[str, Any], user_record: dict[str, Any] | None = None) -> dict:
        if not (verification or {}).get("id"):
            raise TypeError("Invalid verification")
        disclosed = proof_attributes(verification)

        # Only credential-backed values count.
        attributes: dict[str, str] = {}
        for attr in disclosed:
            if attr.get("cred_def_id"):
                attributes[attr["name"]] = attr.get("value")
            logger.debug("  %s%s = %s", "*" if attr.get("cred_def_id") else " ", attr.get("name"), attr.get("value"))

        # HR's "First Name" arrives as "firstname".
        if not attributes.get("first_name") or not attributes.get("firstname"):
            raise ProofValidationError("Two verified attestations of first name were not provided")
        if not attributes.get("last_name") or not attributes.get("lastname"):
            raise ProofValidationError("Two verified attestations of last name were not provided")
        if not all(attributes.get(k) for k in ("address_line_1", "state", "zip_code", "country")):
            raise ProofValidationError("A verified attestation of address was not provided")
        if not attributes.get("socialsecuritynumber"):
            raise ProofValidationError("A verified attestation of a social security number was not provided")
        if not attributes.get("dob"):
            raise ProofValidationError("A verified attestation of date of birth was not provided")

        if attributes["first_name"].strip().lower() != attributes["firstname"].strip().lower():
            raise ProofValidationError("Provided first names did not match")
        if attributes["last_name"].strip().lower() != attributes["lastname"].strip().lower():
            raise ProofValidationError("Provided last names did not match")

        country = attributes["country"]
        if country.strip().lower() not in PERMITTED_COUNTRIES:
            raise ProofValidationError(
                f"Account signups from country {country} are not permitted",
                code=ErrorCode.NOT_A_US_RESIDENT,
            )
        return verification

    async def proof_to_user_record(self, verification: dict[str, Any]) -> dict[str, Any]:
        if not (verification or {}).get("id"):
            raise TypeError("Invalid verification")
        attributes = {attr["name"]: attr.get("value") for attr in proof_attributes(verification)}

        dob_timestamp = dob_to_days(attributes.get("dob", ""))
        logger.info("dob_timestamp=%d", dob_timestamp)

        return {
            "first_name": attributes.get("first_name"),
            "middle_name": attributes.get("middle_name") or "_",
            "last_name": attributes.get("last_name"),
            "dob": attributes.get("dob"),
            "dob_timestamp": dob_timestamp,
            "address_line_1": attributes.get("address_line_1"),
            "address_line_2": attributes.get("address_line_2") or "_",
            "ssn": attributes.get("socialsecuritynumber"),
            "state": attributes.get("state"),
            "postal_code": attributes.get("zip_code"),
            "institution_number": INSTITUTION_NUMBER,
            "transit_number": str(uuid.uuid4()),
            "account_number": str(uuid.uuid4()),
        }
