"""Deliver the app's newest credential to a logged-in user."""

from __future__ import annotations

import logging

from ssi_demo.errors import ErrorCode, FlowError
from ssi_demo.flows.base import ConnectionMethod, Flow, FlowContext, FlowStatus
from ssi_demo.nonce_watcher import RequestType
from ssi_demo.schemas import build_credential_attributes, schema_attribute_names

logger = logging.getLogger("ssi_demo.flows.issuance")


class IssuanceFlow(Flow):
    KIND = "issuance"
    STEPS = (
        FlowStatus.CREATED,
        FlowStatus.BUILDING_CREDENTIAL,
        FlowStatus.ESTABLISHING_CONNECTION,
        FlowStatus.ISSUING_CREDENTIAL,
    )

    def __init__(
        self,
        flow_id: str,
        context: FlowContext,
        user: str,
        connection_method: ConnectionMethod | None = None,
    ) -> None:
        super().__init__(flow_id, context, user)
        self.connection_method = connection_method

    def _pick_method(self, user_opts: dict) -> ConnectionMethod:
        if self.connection_method is not None:
            return self.connection_method
        if user_opts.get("invitation_url"):
            return ConnectionMethod.INVITATION
        return ConnectionMethod.IN_BAND

    async def _execute(self) -> None:
        icon = await self._icon()
        self._advance(FlowStatus.BUILDING_CREDENTIAL)

        logger.info("Getting credential data for %s", self.user)
        user_doc = await self._call(self.context.users.read_user(self.user))
        user_opts = user_doc.get("opts") or {}

        cred_def = await self._newest_credential_definition()
        schema = await self._lookup_schema(cred_def)

        attributes = await build_credential_attributes(
            schema_attribute_names(schema), user_doc.get("personal_info"), self.context.card_renderer,
        )

        method = self._pick_method(user_opts)
        logger.info("Flow %s: connecting to %s via the %s method", self.id, self.user, method.value)
        if method == ConnectionMethod.QR_CODE:
            # The browser renders this as a QR code; the flow ID doubles as the nonce.
            identity = await self._call(self.agent.get_identity())
            if not identity or not identity.get("iurl"):
                raise FlowError(ErrorCode.CONNECTION_FAILED, "Cannot find our agent url")
            self.connection_offer = {
                "id": self.id,
                "local": {"name": self.agent.name, "iurl": identity["iurl"]},
            }

        connection, _ = await self._establish_connection(
            method,
            agent_name=user_opts.get("agent_name"),
            invitation_url=user_opts.get("invitation_url"),
            nonce=self.id,
            watch=RequestType.CONNECTION,
            icon=icon,
        )

        finished = await self._deliver_credential(connection, schema, attributes, icon)
        logger.info("Flow %s: issued credential %s to %s", self.id, finished.get("id"), self.user)
