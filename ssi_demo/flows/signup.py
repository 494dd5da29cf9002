"""Create an account from a proof, then issue the app's credential to it."""

from __future__ import annotations

import logging
import uuid

from ssi_demo.errors import ErrorCode, FlowError, ensure_code
from ssi_demo.flows.base import ConnectionMethod, Flow, FlowContext, FlowStatus
from ssi_demo.helpers.base import SignupHelper
from ssi_demo.nonce_watcher import RequestType
from ssi_demo.schemas import build_credential_attributes, schema_attribute_names
from ssi_demo.users import UserNotFoundError

logger = logging.getLogger("ssi_demo.flows.signup")


class SignupFlow(Flow):
    KIND = "signup"
    STEPS = (
        FlowStatus.CREATED,
        FlowStatus.WAITING_FOR_OFFER,
        FlowStatus.ESTABLISHING_CONNECTION,
        FlowStatus.CHECKING_CREDENTIAL,
        FlowStatus.ISSUING_CREDENTIAL,
    )

    def __init__(
        self,
        flow_id: str,
        context: FlowContext,
        helper: SignupHelper,
        user: str | None = None,
        password: str | None = None,
        agent_name: str | None = None,
        connection_method: ConnectionMethod = ConnectionMethod.IN_BAND,
        qr_code_nonce: str | None = None,
    ) -> None:
        super().__init__(flow_id, context, user or None)
        self.helper = helper
        self.password = password or None
        self.agent_name = agent_name or None
        self.connection_method = connection_method
        self.qr_code_nonce = qr_code_nonce or None

    async def _ensure_new_user(self) -> None:
        try:
            await self._call(self.context.users.read_user(self.user))
        except UserNotFoundError:
            return
        raise FlowError(ErrorCode.USER_ALREADY_EXISTS, f"User {self.user} already exists")

    def _user_opts(self, connection: dict) -> dict:
        if self.qr_code_nonce:
            iurl = (connection.get("remote") or {}).get("iurl")
            return {"agent_name": iurl, "mobile_user": True}
        if self.connection_method == ConnectionMethod.INVITATION:
            return {"invitation_url": self.agent_name, "mobile_user": False}
        return {"agent_name": self.agent_name, "mobile_user": False}

    async def _execute(self) -> None:
        icon = await self._icon()

        if self.qr_code_nonce:
            # Wallet signups have no username; the account number identifies them later.
            self.user = str(uuid.uuid4())
            self.password = None
        else:
            await self._ensure_new_user()

        cred_def = await self._newest_credential_definition()
        schema = await self._lookup_schema(cred_def)

        proof_request = await self._call(self.helper.get_proof_schema())
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
            connection, inbound = await self._establish_connection(
                self.connection_method,
                agent_name=self.agent_name,
                invitation_url=self.agent_name,
                icon=icon,
            )

        try:
            await self._signup_over(connection, inbound, schema, proof_schema.get("id"), icon)
        except Exception:
            if connection.get("id"):
                await self._drop_connection(connection["id"])
            raise

    async def _signup_over(
        self,
        connection: dict,
        inbound: dict | None,
        schema: dict,
        proof_schema_id: str | None,
        icon: str | None,
    ) -> None:
        proof = await self._obtain_proof(
            connection, proof_schema_id, nonce=self.qr_code_nonce, inbound_verification=inbound, icon=icon,
        )
        verification_id = proof.get("id") or self.verification["id"]
        try:
            logger.info("Checking the validity of the proof in verification %s", verification_id)
            try:
                await self._call(self.helper.check_proof(proof))
                personal_info = await self._call(self.helper.proof_to_user_record(proof))
            except Exception as e:
                ensure_code(e, ErrorCode.PROOF_VALIDATION_FAILED)
                raise
        finally:
            await self._cleanup(
                f"verification {verification_id}", self.agent.delete_verification(verification_id),
            )

        personal_info["email"] = self.user
        attributes = await build_credential_attributes(
            schema_attribute_names(schema), personal_info, self.context.card_renderer,
        )

        logger.info("Creating user record for %s", self.user)
        await self._call(self.context.users.create_user(
            self.user, self.password, personal_info, self._user_opts(connection),
        ))
        try:
            await self._deliver_credential(connection, schema, attributes, icon)
        except Exception:
            logger.info("Flow %s: removing user %s after failed issuance", self.id, self.user)
            await self._cleanup(f"user {self.user}", self.context.users.delete_user(self.user))
            raise
        logger.info("Flow %s: signed up %s", self.id, self.user)
