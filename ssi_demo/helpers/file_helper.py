"""File-backed and null proof helpers for logins."""

from __future__ import annotations

import logging
import time
from typing import Any

from ssi_demo.errors import ProofValidationError
from ssi_demo.helpers.base import (
    check_template_path,
    load_template,
    normalize_attr_name,
    normalize_value,
    proof_attributes,
    stamp_version,
)

logger = logging.getLogger("ssi_demo.helpers.file_helper")


class FileProofHelper:
    """Serves proof requests built from a JSON template on disk.

    The template is read once and cached. ``check_proof`` walks the
    template's requested attributes and requires each one to be disclosed
    with the value stored in the user's ``personal_info``.
    """

    def __init__(self, proof_schema_path: str, require_credentials: bool = False) -> None:
        self.proof_schema_path = check_template_path(proof_schema_path)
        self.require_credentials = require_credentials
        self._template: dict[str, Any] | None = None

    async def _get_template(self) -> dict[str, Any]:
        if self._template is None:
            self._template = await load_template(self.proof_schema_path)
        return self._template

    async def get_proof_schema(self, restrictions: list[dict] | None = None) -> dict[str, Any]:
        proof_schema = stamp_version(await self._get_template())
        if restrictions and proof_schema.get("requested_attributes"):
            for attr in proof_schema["requested_attributes"].values():
                attr["restrictions"] = list(restrictions)
        return proof_schema

    async def check_proof(self, verification: dict[str, Any], user_record: dict[str, Any] | None = None) -> bool:
        attributes = proof_attributes(verification)
        if not user_record or not isinstance(user_record.get("personal_info"), dict):
            raise TypeError("Invalid user record")
        personal_info = user_record["personal_info"]
        template = await self._get_template()

        logger.info("Checking the proof for the proper attributes")
        for schema_attr in (template.get("requested_attributes") or {}).values():
            name = schema_attr["name"]
            wanted = normalize_attr_name(name)
            accepted = None
            for proof_attr in attributes:
                if proof_attr.get("name") != wanted:
                    continue
                if (schema_attr.get("restrictions") or self.require_credentials) and not proof_attr.get("cred_def_id"):
                    raise ProofValidationError(f"Requested attribute {name} did not have an associated credential")
                accepted = proof_attr

            stored = personal_info.get(name)
            if accepted is None or stored is None or normalize_value(stored) != normalize_value(accepted.get("value", "")):
                raise ProofValidationError(f"Verified attribute {name!r} did not match the user record")
            logger.debug("Proof attribute %s matches the user record", wanted)

        logger.info("Verified all proof attributes from the proof")
        return True

    async def proof_to_user_record(self, verification: dict[str, Any]) -> dict[str, Any]:
        return {attr["name"]: attr.get("value") for attr in proof_attributes(verification)}


class NullProofHelper:
    """Asks for one self-attested dummy attribute and ignores the answer."""

    def __init__(self, pass_proofs: bool = True) -> None:
        self.pass_proofs = bool(pass_proofs)

    async def get_proof_schema(self, restrictions: list[dict] | None = None) -> dict[str, Any]:
        return {
            "name": "Dummy Proof Request",
            "version": f"1.0{int(time.time() * 1000)}",
            "requested_attributes": {
                "dummy_attribute": {"name": "dummy_attribute"},
            },
        }

    async def check_proof(self, verification: dict[str, Any], user_record: dict[str, Any] | None = None) -> bool:
        if not self.pass_proofs:
            raise ProofValidationError("Proof was not accepted")
        return True

    async def proof_to_user_record(self, verification: dict[str, Any]) -> dict[str, Any]:
        return {}
