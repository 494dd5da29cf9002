"""Log a user in by checking a proof from their wallet."""

from __future__ import annotations

import logging

from ssi_demo.errors import ErrorCode, FlowError, ensure_code
from ssi_demo.flows.base import ConnectionMethod, Flow, FlowContext, FlowStatus
from ssi_demo.helpers.base import ProofHelper
from ssi_demo.nonce_watcher import RequestType

logger = logging.getLogger("ssi_demo.flows.login")


class LoginFlow(Flow):
    """Proof-based login.

    With a username the holder is reached through the invitation URL stored
    on their user record. With a QR code nonce the holder's wallet contacts
    us, and when no username was given the user is looked up afterwards by
    the ``account_number`` disclosed in the proof.
    """

    KIND = "login"
    STEPS = (
        FlowStatus.CREATED,
        FlowStatus.WAITING_FOR_OFFER,
        FlowStatus.ESTABLISHING_CONNECTION,
        FlowStatus.CHECKING_CREDENTIAL,
    )

    def __init__(
        self,
        flow_id: str,
        context: FlowContext,
        helper: ProofHelper,
        user: str | None = None,
        qr_code_nonce: str | None = None,
    ) -> None:
        super().__init__(flow_id, context, user or None)
        self.helper = helper
        self.qr_code_nonce = qr_code_nonce or None

    async def _execute(self) -> None:
        icon = await self._icon()

        user_doc = None
        if self.user:
            logger.info("Getting user record for %s", self.user)
            user_doc = await self._call(self.context.users.read_user(self.user))

        cred_def = await self._newest_credential_definition()
        logger.debug("Checking for attributes with credential definition id %s", cred_def.get("id"))
        proof_request = await self._call(self.helper.get_proof_schema([{"cred_def_id": cred_def["id"]}]))
        proof_schema = await self._call(self.agent.create_proof_schema(
            proof_request["name"],
            proof_request["version"],
            proof_request.get("requested_attributes"),
            proof_request.get("requested_predicates"),
        ))
        logger.debug("Created proof schema %s", proof_schema)

        if self.qr_code_nonce:
            connection, inbound = await self._establish_connection(
                ConnectionMethod.QR_CODE,
                nonce=self.qr_code_nonce,
                watch=RequestType.CONNECTION | RequestType.VERIFICATION,
                icon=icon,
            )
        else:
            user_opts = (user_doc or {}).get("opts") or {}
            connection, inbound = await self._establish_connection(
                ConnectionMethod.INVITATION,
                invitation_url=user_opts.get("invitation_url"),
                icon=icon,
            )

        proof = await self._obtain_proof(
            connection,
            proof_schema.get("id"),
            nonce=self.qr_code_nonce,
            inbound_verification=inbound,
            icon=icon,
        )
        verification_id = proof.get("id") or self.verification["id"]
        try:
            if user_doc is None:
                user_doc = await self._user_from_proof(proof)

            logger.info("Checking the validity of the proof in verification %s", verification_id)
            try:
                await self._call(self.helper.check_proof(proof, user_doc))
            except Exception as e:
                ensure_code(e, ErrorCode.PROOF_VALIDATION_FAILED)
                raise
        finally:
            await self._cleanup(
                f"verification {verification_id}", self.agent.delete_verification(verification_id),
            )

    async def _user_from_proof(self, proof: dict) -> dict:
        """Users created from a QR signup are keyed by a random ID; find them by account number."""
        for attr in (proof.get("info") or {}).get("attributes") or []:
            if attr.get("name") == "account_number":
                user_doc = await self._call(self.context.users.read_user_from_account(attr.get("value")))
                self.user = user_doc["_id"]
                logger.info("Flow %s: proof belongs to user %s", self.id, self.user)
                return user_doc
        raise FlowError(ErrorCode.USER_NOT_FOUND, "The proof did not disclose an account number to look the user up by")
