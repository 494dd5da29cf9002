"""Registries of running flows, one manager per flow kind.

Lifecycle:
    manager = IssuanceManager(context)
    manager.start_reaper()
    flow_id = manager.create("alice@example.com")
    manager.get_status(flow_id)      # poll until terminal
    manager.delete(flow_id)
    ...
    await manager.stop_all()

``create`` validates its parameters, registers the flow and starts its task
before returning, so the returned ID is immediately pollable. Flows that
nobody deletes are evicted by the reaper once they outlive the TTL.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Generic, TypeVar

from ssi_demo.errors import FlowNotFoundError, InvalidParametersError
from ssi_demo.flows.base import ConnectionMethod, Flow, FlowContext
from ssi_demo.flows.issuance import IssuanceFlow
from ssi_demo.flows.login import LoginFlow
from ssi_demo.flows.signup import SignupFlow
from ssi_demo.helpers.base import ProofHelper, SignupHelper
from ssi_demo.schemas import newest_credential_definition

logger = logging.getLogger("ssi_demo.flows.manager")

F = TypeVar("F", bound=Flow)

# Older clients send "qrcode".
_METHOD_ALIASES = {"qrcode": ConnectionMethod.QR_CODE}


def parse_connection_method(value: str | ConnectionMethod | None) -> ConnectionMethod | None:
    if value is None or isinstance(value, ConnectionMethod):
        return value
    if not isinstance(value, str) or not value:
        raise InvalidParametersError(f"Invalid connection_method {value!r}")
    try:
        return _METHOD_ALIASES.get(value) or ConnectionMethod(value)
    except ValueError:
        valid = ", ".join(m.value for m in ConnectionMethod)
        raise InvalidParametersError(f"Invalid connection_method {value!r}; expected one of {valid}") from None


def _require_str(name: str, value: Any) -> str:
    if not value or not isinstance(value, str):
        raise InvalidParametersError(f"{name} must be a non-empty string")
    return value


class FlowManager(Generic[F]):
    KIND = "Flow"

    def __init__(
        self,
        context: FlowContext,
        ttl_seconds: float = 600,
        reaper_interval_seconds: float = 60,
    ) -> None:
        self.context = context
        self.ttl_seconds = ttl_seconds
        self.reaper_interval_seconds = reaper_interval_seconds
        self._flows: dict[str, F] = {}
        self._reaper: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._flows)

    def __contains__(self, flow_id: object) -> bool:
        return flow_id in self._flows

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    def _register(self, flow: F) -> str:
        self._flows[flow.id] = flow
        flow.start()
        logger.info("Created %s flow %s for %s", flow.KIND, flow.id, flow.user or "an unknown user")
        return flow.id

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def get_flow(self, flow_id: str) -> F:
        try:
            return self._flows[flow_id]
        except KeyError:
            raise FlowNotFoundError(flow_id, self.KIND) from None

    def get_status(self, flow_id: str) -> dict[str, Any]:
        return self.get_flow(flow_id).get_status()

    def get_user(self, flow_id: str) -> str | None:
        return self.get_flow(flow_id).user

    def delete(self, flow_id: str) -> None:
        """Remove a flow, stopping it first if it is still running."""
        flow = self.get_flow(flow_id)
        if not flow.terminal:
            flow.stop()
        del self._flows[flow_id]
        logger.info("Deleted %s flow %s", flow.KIND, flow_id)

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    @property
    def poll_bound_seconds(self) -> float:
        return self.context.wait_retries * self.context.wait_interval_ms / 1000

    def reap(self, now: float | None = None) -> list[str]:
        """Evict flows nobody came back for.

        Terminal flows go once they have been finished for longer than the
        TTL. Running flows get an extra poll bound of grace and are stopped.
        """
        now = time.monotonic() if now is None else now
        evicted = []
        for flow_id, flow in list(self._flows.items()):
            if flow.terminal:
                expired = now - (flow.finished_at or flow.created_at) > self.ttl_seconds
            else:
                expired = now - flow.created_at > self.ttl_seconds + self.poll_bound_seconds
            if not expired:
                continue
            if not flow.terminal:
                flow.stop()
            del self._flows[flow_id]
            evicted.append(flow_id)
        if evicted:
            logger.info("Reaped %d abandoned %s flows", len(evicted), self.KIND.lower())
        return evicted

    async def _reap_forever(self) -> None:
        while True:
            await asyncio.sleep(self.reaper_interval_seconds)
            self.reap()

    def start_reaper(self) -> None:
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(self._reap_forever(), name=f"{self.KIND.lower()}-reaper")

    async def stop_reaper(self) -> None:
        if self._reaper is None:
            return
        self._reaper.cancel()
        try:
            await self._reaper
        except asyncio.CancelledError:
            pass
        self._reaper = None

    async def stop_all(self) -> None:
        """Stop every running flow and wait for their tasks to wind down."""
        await self.stop_reaper()
        tasks = []
        for flow in self._flows.values():
            flow.stop()
            if flow.task is not None:
                tasks.append(flow.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._flows.clear()


class IssuanceManager(FlowManager[IssuanceFlow]):
    KIND = "Issuance"

    def create(self, user: str, connection_method: str | ConnectionMethod | None = None) -> str:
        _require_str("user", user)
        method = parse_connection_method(connection_method)
        return self._register(IssuanceFlow(self._new_id(), self.context, user, method))


class LoginManager(FlowManager[LoginFlow]):
    KIND = "Login"

    def __init__(self, context: FlowContext, helper: ProofHelper, **kwargs: Any) -> None:
        super().__init__(context, **kwargs)
        self.helper = helper

    def create(self, user: str | None = None, qr_code_nonce: str | None = None) -> str:
        # A QR login may start without knowing who is logging in.
        if not qr_code_nonce:
            _require_str("user", user)
        elif user is not None and not isinstance(user, str):
            raise InvalidParametersError("user must be a string")
        return self._register(LoginFlow(self._new_id(), self.context, self.helper, user, qr_code_nonce))

    async def get_login_schema(self, restrictions: list[dict] | None = None) -> dict:
        return await self.helper.get_proof_schema(restrictions)

    async def publish_login_schema(self) -> dict:
        """Publish a login proof schema bound to this agent's newest credential definition."""
        agent = self.context.agent
        cred_def = newest_credential_definition(await agent.get_credential_definitions(), agent.name)
        proof_request = await self.get_login_schema([{"cred_def_id": cred_def["id"]}])
        return await agent.create_proof_schema(
            proof_request["name"],
            proof_request["version"],
            proof_request.get("requested_attributes"),
            proof_request.get("requested_predicates"),
        )


class SignupManager(FlowManager[SignupFlow]):
    KIND = "Signup"

    def __init__(self, context: FlowContext, helper: SignupHelper, **kwargs: Any) -> None:
        super().__init__(context, **kwargs)
        self.helper = helper

    def create(
        self,
        user: str | None,
        agent_name: str | None = None,
        password: str | None = None,
        connection_method: str | ConnectionMethod | None = None,
        qr_code_nonce: str | None = None,
    ) -> str:
        if qr_code_nonce:
            method = ConnectionMethod.QR_CODE
        else:
            _require_str("user", user)
            _require_str("agent_name", agent_name)
            _require_str("password", password)
            method = parse_connection_method(connection_method) or ConnectionMethod.IN_BAND
            if method == ConnectionMethod.QR_CODE:
                raise InvalidParametersError("A qr_code signup requires a qr_code_nonce")
        flow = SignupFlow(
            self._new_id(), self.context, self.helper,
            user=user, password=password, agent_name=agent_name,
            connection_method=method, qr_code_nonce=qr_code_nonce,
        )
        return self._register(flow)

    async def get_signup_schema(self) -> dict:
        return await self.helper.get_proof_schema()
