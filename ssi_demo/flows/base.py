"""Shared state machine for signup, login and issuance flows.

A flow is created by its manager, started as an asyncio task and then polled
through ``get_status()`` until it reaches FINISHED, ERROR or STOPPED. The
flow's own task is the only writer of its fields.

Every remote call made by a flow step goes through ``Flow._call()``, which
races the call against the flow's cancel token. ``stop()`` trips the token,
so a flow blocked in a 90 second wait stops at once instead of at the next
step boundary. Cleanup calls bypass the token so a stopped flow still deletes
what it left half-open.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable

from ssi_demo.agent import AgentError
from ssi_demo.branding import CardRenderer, ImageProvider, NullCardRenderer, NullImageProvider
from ssi_demo.errors import ErrorCode, FlowError, FlowStopped, ensure_code, with_code
from ssi_demo.nonce_watcher import InboundNonceWatcher, RequestType, remote_did
from ssi_demo.schemas import connection_target, newest_credential_definition, schema_id_of

logger = logging.getLogger("ssi_demo.flows")


class FlowStatus(str, Enum):
    CREATED = "CREATED"
    WAITING_FOR_OFFER = "WAITING_FOR_OFFER"
    BUILDING_CREDENTIAL = "BUILDING_CREDENTIAL"
    ESTABLISHING_CONNECTION = "ESTABLISHING_CONNECTION"
    CHECKING_CREDENTIAL = "CHECKING_CREDENTIAL"
    ISSUING_CREDENTIAL = "ISSUING_CREDENTIAL"
    FINISHED = "FINISHED"
    ERROR = "ERROR"
    STOPPED = "STOPPED"


TERMINAL_STATES = frozenset({FlowStatus.FINISHED, FlowStatus.ERROR, FlowStatus.STOPPED})


class ConnectionMethod(str, Enum):
    IN_BAND = "in_band"
    OUT_OF_BAND = "out_of_band"
    INVITATION = "invitation"
    QR_CODE = "qr_code"


class CancelToken:
    """One-shot stop signal shared between a flow and its remote calls."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class FlowContext:
    """Collaborators and polling bound handed to every flow."""

    agent: Any
    users: Any
    icon_provider: ImageProvider = field(default_factory=NullImageProvider)
    card_renderer: CardRenderer = field(default_factory=NullCardRenderer)
    wait_retries: int = 30
    wait_interval_ms: int = 3000


class Flow:
    KIND = "flow"
    # Non-terminal states in the order the flow passes through them.
    STEPS: tuple[FlowStatus, ...] = (FlowStatus.CREATED,)

    def __init__(self, flow_id: str, context: FlowContext, user: str | None = None) -> None:
        self.id = flow_id
        self.context = context
        self.agent = context.agent
        self.user = user
        self.status = FlowStatus.CREATED
        self.history: list[FlowStatus] = [FlowStatus.CREATED]
        self.connection_offer: dict | None = None
        self.verification: dict | None = None
        self.credential: dict | None = None
        self.error: FlowError | None = None
        self.created_at = time.monotonic()
        self.finished_at: float | None = None
        self._token = CancelToken()
        self._task: asyncio.Task | None = None
        self._watcher: InboundNonceWatcher | None = None
        self._dropped: set[str] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    def start(self) -> asyncio.Task:
        if self._task is not None:
            raise RuntimeError(f"{self.KIND} flow {self.id} was already started")
        self._task = asyncio.create_task(self.run(), name=f"{self.KIND}-{self.id}")
        return self._task

    async def run(self) -> None:
        logger.info("Starting %s flow %s", self.KIND, self.id)
        try:
            await self._execute()
        except FlowStopped:
            self._terminate(FlowStatus.STOPPED)
            logger.info("%s flow %s stopped", self.KIND, self.id)
        except asyncio.CancelledError:
            self._terminate(FlowStatus.STOPPED)
            raise
        except Exception as e:
            code = with_code(e, ErrorCode.UNKNOWN_ERROR)
            if isinstance(e, FlowError):
                e.code = code
                self.error = e
            else:
                self.error = FlowError(code, str(e) or type(e).__name__)
            if self._terminate(FlowStatus.ERROR):
                logger.error("%s flow %s failed: %s %s", self.KIND, self.id, code.value, self.error.message)
        else:
            if self._terminate(FlowStatus.FINISHED):
                logger.info("%s flow %s completed successfully", self.KIND, self.id)

    async def _execute(self) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        """Move to STOPPED and abort whatever remote wait is in flight."""
        if self.terminal:
            return
        logger.info("Stopping %s flow %s", self.KIND, self.id)
        self._terminate(FlowStatus.STOPPED)
        self._token.cancel()
        if self._watcher is not None:
            self._watcher.stop()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _rank(self, status: FlowStatus) -> int:
        if status in TERMINAL_STATES:
            return len(self.STEPS)
        return self.STEPS.index(status)

    def _advance(self, status: FlowStatus) -> None:
        """Move forward to ``status``; never backwards, never out of a terminal state."""
        if self.terminal:
            raise FlowStopped(f"{self.KIND} flow {self.id} is already {self.status.value}")
        if status not in self.STEPS or self._rank(status) <= self._rank(self.status):
            return
        self.status = status
        self.history.append(status)

    def _terminate(self, status: FlowStatus) -> bool:
        if self.terminal:
            return False
        self.status = status
        self.history.append(status)
        self.finished_at = time.monotonic()
        return True

    def get_status(self) -> dict[str, Any]:
        snapshot: dict[str, Any] = {"status": self.status.value}
        if self.status == FlowStatus.ERROR and self.error is not None:
            snapshot["error"] = self.error.code.value
            snapshot["reason"] = self.error.message
        if self.status == FlowStatus.STOPPED:
            snapshot["error"] = ErrorCode.FLOW_STOPPED.value
            snapshot["reason"] = f"{self.KIND} flow {self.id} was stopped"
        if self.status in (FlowStatus.WAITING_FOR_OFFER, FlowStatus.ESTABLISHING_CONNECTION) and self.connection_offer:
            snapshot["connection_offer"] = self.connection_offer
        if self.status == FlowStatus.ISSUING_CREDENTIAL and self.credential:
            snapshot["credential"] = {"id": self.credential.get("id")}
        if self.status == FlowStatus.CHECKING_CREDENTIAL and self.verification:
            snapshot["verification"] = {"id": self.verification.get("id")}
        return snapshot

    # ------------------------------------------------------------------
    # Remote call helpers
    # ------------------------------------------------------------------

    async def _call(self, awaitable: Awaitable[Any]) -> Any:
        """Await a remote call unless the flow is stopped first."""
        if self._token.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise FlowStopped(f"{self.KIND} flow {self.id} was stopped")
        task = asyncio.ensure_future(awaitable)
        stopper = asyncio.ensure_future(self._token.wait())
        try:
            done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopper.cancel()
            if not task.done():
                task.cancel()
        if task not in done or self._token.cancelled:
            await asyncio.gather(task, return_exceptions=True)
            raise FlowStopped(f"{self.KIND} flow {self.id} was stopped")
        return task.result()

    async def _cleanup(self, label: str, awaitable: Awaitable[Any]) -> None:
        try:
            await awaitable
            logger.info("Flow %s: deleted %s", self.id, label)
        except Exception as e:
            logger.warning("Flow %s: failed to delete %s: %s", self.id, label, e)

    async def _drop_connection(self, connection_id: str) -> None:
        """Delete a connection once, however many failure paths ask for it."""
        if connection_id in self._dropped:
            return
        self._dropped.add(connection_id)
        await self._cleanup(f"connection {connection_id}", self.agent.delete_connection(connection_id))

    async def _icon(self) -> str | None:
        return await self._call(self.context.icon_provider.get_image())

    async def _watch_nonce(self, nonce: str, request_type: RequestType) -> dict:
        self._watcher = InboundNonceWatcher(
            self.agent, request_type, nonce,
            retries=self.context.wait_retries, interval_ms=self.context.wait_interval_ms,
        )
        try:
            return await self._call(self._watcher.start())
        finally:
            self._watcher = None

    async def _newest_credential_definition(self) -> dict:
        cred_defs = await self._call(self.agent.get_credential_definitions())
        logger.debug("Flow %s: credential definitions: %s", self.id, cred_defs)
        return newest_credential_definition(cred_defs, self.agent.name)

    async def _lookup_schema(self, cred_def: dict) -> dict:
        schema_id = schema_id_of(cred_def)
        try:
            schema = await self._call(self.agent.get_credential_schema(schema_id)) if schema_id else None
        except AgentError as e:
            raise FlowError(ErrorCode.SCHEMA_LOOKUP_FAILED, f"Failed to lookup schema {schema_id}: {e}") from e
        if not schema:
            raise FlowError(ErrorCode.SCHEMA_LOOKUP_FAILED, "Failed to lookup the selected schema")
        logger.debug("Flow %s: using schema %s", self.id, schema_id)
        return schema

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _establish_connection(
        self,
        method: ConnectionMethod,
        *,
        agent_name: str | None = None,
        invitation_url: str | None = None,
        nonce: str | None = None,
        watch: RequestType = RequestType.CONNECTION,
        icon: str | None = None,
    ) -> tuple[dict, dict | None]:
        """Connect to the holder.

        Returns ``(connection, inbound_verification)``. The second item is set
        only when a QR scan answered straight with a proof response, in which
        case the connection is taken from that verification record.
        """
        properties = {"icon": icon} if icon else None
        retries, interval = self.context.wait_retries, self.context.wait_interval_ms
        pending: dict | None = None

        try:
            if method == ConnectionMethod.QR_CODE:
                if not nonce:
                    raise FlowError(ErrorCode.INVALID_PARAMETERS, "A QR code connection requires a nonce")
                if FlowStatus.WAITING_FOR_OFFER in self.STEPS:
                    self._advance(FlowStatus.WAITING_FOR_OFFER)
                else:
                    self._advance(FlowStatus.ESTABLISHING_CONNECTION)
                logger.info("Flow %s: waiting for an inbound request with nonce %s", self.id, nonce)
                inbound = await self._watch_nonce(nonce, watch)
                self._advance(FlowStatus.ESTABLISHING_CONNECTION)
                if inbound.get("state") == "inbound_verification_request":
                    logger.info("Flow %s: received verification request %s", self.id, inbound.get("id"))
                    return inbound.get("connection") or {}, inbound
                pending = self.connection_offer = inbound
                logger.info("Flow %s: accepting connection offer %s", self.id, inbound.get("id"))
                await self._call(self.agent.accept_connection(inbound["id"]))
            else:
                self._advance(FlowStatus.ESTABLISHING_CONNECTION)
                if method == ConnectionMethod.IN_BAND:
                    if not agent_name:
                        raise FlowError(ErrorCode.HOLDER_AGENT_NOT_FOUND, "User record does not have an associated agent name")
                    to = connection_target(agent_name)
                    logger.info("Flow %s: sending connection offer to %s", self.id, to)
                    pending = await self._call(self.agent.create_connection(to, properties))
                elif method == ConnectionMethod.OUT_OF_BAND:
                    pending = await self._call(self.agent.create_connection(None, properties))
                elif method == ConnectionMethod.INVITATION:
                    if not invitation_url:
                        raise FlowError(
                            ErrorCode.HOLDER_AGENT_NOT_FOUND, "User record does not have an associated invitation url"
                        )
                    logger.info("Flow %s: accepting invitation %s", self.id, invitation_url)
                    pending = await self._call(self.agent.accept_invitation(invitation_url, properties))
                else:
                    raise FlowError(ErrorCode.INVALID_CONNECTION_METHOD, f"An invalid connection method was used: {method}")
                self.connection_offer = pending
                logger.info("Flow %s: created connection offer %s", self.id, pending.get("id"))

            connection = await self._call(self.agent.wait_for_connection(pending["id"], retries, interval))
        except Exception as e:
            ensure_code(e, ErrorCode.CONNECTION_FAILED)
            logger.error("Flow %s: failed to establish a connection with the user: %s", self.id, e)
            if pending and pending.get("id"):
                await self._drop_connection(pending["id"])
            raise

        logger.info("Flow %s: established connection %s, their DID: %s", self.id, connection.get("id"), remote_did(connection))
        return connection, None

    async def _obtain_proof(
        self,
        connection: dict,
        proof_schema_id: str | None,
        *,
        nonce: str | None = None,
        inbound_verification: dict | None = None,
        icon: str | None = None,
    ) -> dict:
        """Request a proof over ``connection`` and wait for it to pass.

        With a QR nonce the holder sends the proof request to us; it is
        promoted to an outbound request instead of creating a new one. The
        verification is deleted on every failure here.
        """
        self._advance(FlowStatus.CHECKING_CREDENTIAL)
        retries, interval = self.context.wait_retries, self.context.wait_interval_ms

        try:
            if nonce:
                if inbound_verification is None:
                    inbound_verification = await self._watch_nonce(nonce, RequestType.VERIFICATION)
                self.verification = inbound_verification
                logger.info("Flow %s: promoting verification request %s", self.id, inbound_verification["id"])
                await self._call(self.agent.update_verification(inbound_verification["id"], "outbound_proof_request"))
            else:
                did = remote_did(connection)
                logger.info("Flow %s: sending proof request to %s", self.id, did)
                self.verification = await self._call(self.agent.create_verification(
                    {"did": did}, proof_schema_id, "outbound_proof_request", {"icon": icon} if icon else None,
                ))
        except Exception as e:
            ensure_code(e, ErrorCode.VERIFICATION_FAILED)
            logger.error("Flow %s: proof request failed: %s", self.id, e)
            if connection.get("id"):
                await self._drop_connection(connection["id"])
            raise

        verification_id = self.verification["id"]
        try:
            proof = await self._call(self.agent.wait_for_verification(verification_id, retries, interval))
        except Exception as e:
            ensure_code(e, ErrorCode.VERIFICATION_FAILED)
            logger.error("Flow %s: verification %s never completed: %s", self.id, verification_id, e)
            await self._cleanup(f"verification {verification_id}", self.agent.delete_verification(verification_id))
            raise

        logger.info("Flow %s: final state for verification %s: %s", self.id, verification_id, proof.get("state"))
        if proof.get("state") != "passed":
            await self._cleanup(f"verification {verification_id}", self.agent.delete_verification(verification_id))
            raise FlowError(
                ErrorCode.PROOF_VALIDATION_FAILED,
                f"Verification {verification_id} did not pass validation",
            )
        logger.debug("Flow %s: proof %s", self.id, proof)
        return proof

    async def _deliver_credential(
        self,
        connection: dict,
        schema: dict,
        attributes: dict[str, str],
        icon: str | None = None,
    ) -> dict:
        """Offer a credential and wait for the holder to accept it."""
        self._advance(FlowStatus.ISSUING_CREDENTIAL)
        retries, interval = self.context.wait_retries, self.context.wait_interval_ms
        did = remote_did(connection)

        logger.info("Flow %s: sending credential offer to %s", self.id, did)
        try:
            self.credential = await self._call(self.agent.offer_credential(
                {"did": did},
                {"schema_name": schema.get("name"), "schema_version": schema.get("version")},
                attributes,
                {"icon": icon} if icon else None,
            ))
        except Exception as e:
            ensure_code(e, ErrorCode.CREDENTIAL_OFFER_FAILED)
            logger.error("Flow %s: failed to offer credential: %s", self.id, e)
            if connection.get("id"):
                await self._drop_connection(connection["id"])
            raise

        credential_id = self.credential["id"]
        try:
            finished = await self._call(self.agent.wait_for_credential(credential_id, retries, interval))
        except Exception as e:
            ensure_code(e, ErrorCode.CREDENTIAL_OFFER_FAILED)
            logger.error("Flow %s: failed to deliver credential %s: %s", self.id, credential_id, e)
            await self._cleanup(f"credential {credential_id}", self.agent.delete_credential(credential_id))
            raise

        logger.info("Flow %s: final state for credential %s: %s", self.id, credential_id, finished.get("state"))
        if finished.get("state") != "issued":
            await self._cleanup(f"credential {credential_id}", self.agent.delete_credential(credential_id))
            raise FlowError(
                ErrorCode.CREDENTIAL_NOT_ACCEPTED,
                f"Offered credential {credential_id} was not accepted by {did}",
            )
        return finished
