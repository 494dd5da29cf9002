"""In-memory stand-ins for the cloud agent and the users database.

``FakeAgent`` records every call as ``(method, args)`` and answers from
scripted state. Tests steer it through its public attributes:

    agent.verification_state = "failed"      # holder rejected the proof
    agent.failures["offer_credential"] = AgentError("boom")
    agent.blocked.add("wait_for_connection")  # never returns; use stop()
"""

from __future__ import annotations

import asyncio
import copy
import itertools
from typing import Any

from ssi_demo.agent import AgentError
from ssi_demo.flows import FlowContext
from ssi_demo.users import UserExistsError, UserNotFoundError

HOLDER_DID = "did:sov:holder"
HOLDER_IURL = "https://holder.example.com/iurl"
AGENT_IURL = "https://bank.example.com/iurl"


class FakeAgent:
    def __init__(self, name: str = "bank-agent") -> None:
        self.name = name
        self.friendly_name = "Bank"
        self.account_url = "https://agents.example.com"
        self.calls: list[tuple[str, tuple]] = []
        self.cred_defs: list[dict] = [{"id": "cd-1", "schema_id": "schema-1", "schema_version": "1.0"}]
        self.routed_cred_defs: dict[str, Any] = {}
        self.schema: dict | None = {
            "id": "schema-1",
            "name": "Bank Account",
            "version": "1.0",
            "attr_names": ["first_name", "last_name"],
        }
        self.connection_state = "connected"
        self.verification_state = "passed"
        self.credential_state = "issued"
        self.proof_attributes: list[dict] = []
        self.inbound_connections: list[dict] = []
        self.inbound_verifications: list[dict] = []
        self.invitations: list[dict] = []
        self.schemas: list[dict] = []
        self.proof_schemas: list[dict] = []
        self.failures: dict[str, Exception] = {}
        self.blocked: set[str] = set()
        self._ids = itertools.count(1)

    async def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        if method in self.failures:
            raise self.failures[method]
        if method in self.blocked:
            await asyncio.Event().wait()

    def called(self, method: str) -> list[tuple]:
        return [args for name, args in self.calls if name == method]

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    # identity / schemas

    async def get_identity(self) -> dict:
        await self._enter("get_identity")
        return {"name": self.name, "iurl": AGENT_IURL}

    async def get_credential_definitions(self, route: str | None = None) -> Any:
        await self._enter("get_credential_definitions", route)
        if route:
            return self.routed_cred_defs.get(route, {"agents": []})
        return copy.deepcopy(self.cred_defs)

    async def get_credential_schema(self, schema_id: str) -> dict | None:
        await self._enter("get_credential_schema", schema_id)
        return copy.deepcopy(self.schema)

    async def create_proof_schema(self, name, version, requested_attributes=None, requested_predicates=None) -> dict:
        await self._enter("create_proof_schema", name, version, requested_attributes, requested_predicates)
        return {"id": f"{name}:{version}", "name": name, "version": version}

    async def create_credential_definition(self, schema_id: str) -> dict:
        await self._enter("create_credential_definition", schema_id)
        cred_def = {"id": self._new_id("cd"), "schema_id": schema_id}
        self.cred_defs.append(cred_def)
        return copy.deepcopy(cred_def)

    async def get_credential_schemas(self) -> list[dict]:
        await self._enter("get_credential_schemas")
        return copy.deepcopy(self.schemas)

    async def create_credential_schema(self, name, version, attributes) -> dict:
        await self._enter("create_credential_schema", name, version, attributes)
        schema = {"id": f"{name}:{version}", "name": name, "version": version, "attr_names": list(attributes)}
        self.schemas.append(schema)
        return copy.deepcopy(schema)

    async def get_proof_schemas(self, query=None) -> list[dict]:
        await self._enter("get_proof_schemas", query)
        name = (query or {}).get("name")
        return [copy.deepcopy(s) for s in self.proof_schemas if name is None or s.get("name") == name]

    # connections

    async def create_connection(self, to, properties=None) -> dict:
        await self._enter("create_connection", to, properties)
        return {"id": self._new_id("conn"), "state": "outbound_offer"}

    async def accept_invitation(self, url, properties=None) -> dict:
        await self._enter("accept_invitation", url, properties)
        return {"id": self._new_id("conn"), "state": "outbound_offer"}

    async def accept_connection(self, connection_id) -> dict:
        await self._enter("accept_connection", connection_id)
        return {"id": connection_id, "state": "connected"}

    async def get_connections(self, query=None) -> list[dict]:
        await self._enter("get_connections", query)
        query = query or {}
        nonce = query.get("remote.properties.meta.nonce")
        if nonce:
            return [c for c in self.inbound_connections
                    if ((c.get("remote") or {}).get("properties") or {}).get("meta", {}).get("nonce") == nonce]
        state = query.get("state")
        return [c for c in self.inbound_connections if state is None or c.get("state") == state]

    async def delete_connection(self, connection_id) -> dict:
        await self._enter("delete_connection", connection_id)
        return {}

    async def wait_for_connection(self, connection_id, retries=30, interval_ms=3000) -> dict:
        await self._enter("wait_for_connection", connection_id, retries, interval_ms)
        if self.connection_state != "connected":
            raise AgentError(f"Connection {connection_id} entered state {self.connection_state!r}")
        return {
            "id": connection_id,
            "state": "connected",
            "remote": {"pairwise": {"did": HOLDER_DID}, "iurl": HOLDER_IURL},
        }

    async def create_invitation(self, direct_route=True, manual_accept=False, max_acceptances=-1, properties=None):
        await self._enter("create_invitation", direct_route, manual_accept, max_acceptances, properties)
        return {"id": self._new_id("inv"), "url": "https://bank.example.com/invitation"}

    async def get_invitations(self, query=None) -> list[dict]:
        await self._enter("get_invitations", query)
        return copy.deepcopy(self.invitations)

    # credentials

    async def offer_credential(self, to, schema, attributes, properties=None) -> dict:
        await self._enter("offer_credential", to, schema, attributes, properties)
        return {"id": self._new_id("cred"), "state": "outbound_offer", "attributes": attributes}

    async def delete_credential(self, credential_id) -> dict:
        await self._enter("delete_credential", credential_id)
        return {}

    async def wait_for_credential(self, credential_id, retries=30, interval_ms=3000) -> dict:
        await self._enter("wait_for_credential", credential_id, retries, interval_ms)
        return {"id": credential_id, "state": self.credential_state}

    # verifications

    async def create_verification(self, to, proof_schema_id, state="outbound_proof_request", properties=None) -> dict:
        await self._enter("create_verification", to, proof_schema_id, state, properties)
        return {"id": self._new_id("ver"), "state": state}

    async def update_verification(self, verification_id, state) -> dict:
        await self._enter("update_verification", verification_id, state)
        return {"id": verification_id, "state": state}

    async def get_verifications(self, query=None) -> list[dict]:
        await self._enter("get_verifications", query)
        nonce = (query or {}).get("properties.meta.nonce")
        return [v for v in self.inbound_verifications
                if ((v.get("properties") or {}).get("meta") or {}).get("nonce") == nonce]

    async def delete_verification(self, verification_id) -> dict:
        await self._enter("delete_verification", verification_id)
        return {}

    async def wait_for_verification(self, verification_id, retries=30, interval_ms=3000) -> dict:
        await self._enter("wait_for_verification", verification_id, retries, interval_ms)
        return {
            "id": verification_id,
            "state": self.verification_state,
            "info": {"attributes": copy.deepcopy(self.proof_attributes)},
        }


class FakeUserStore:
    def __init__(self, *users: dict) -> None:
        self.users: dict[str, dict] = {u["_id"]: copy.deepcopy(u) for u in users}
        self.deleted: list[str] = []

    async def read_user(self, username: str) -> dict:
        if username not in self.users:
            raise UserNotFoundError(f"User {username} could not be found in the user list")
        doc = copy.deepcopy(self.users[username])
        doc.pop("password", None)
        return doc

    async def create_user(self, username, password, personal_info=None, opts=None) -> dict:
        if username in self.users:
            raise UserExistsError(username)
        if not (opts or {}).get("mobile_user") and not isinstance(password, str):
            raise ValueError("New user's password must be a string")
        doc = {"_id": username, "email": username, "type": "user", "password": password}
        if personal_info:
            doc["personal_info"] = copy.deepcopy(personal_info)
        if opts:
            doc["opts"] = copy.deepcopy(opts)
        self.users[username] = doc
        return await self.read_user(username)

    async def read_users(self) -> list[dict]:
        return [await self.read_user(username) for username in self.users]

    async def update_user(self, username, personal_info=None, opts=None) -> dict:
        if username not in self.users:
            raise UserNotFoundError(f"User {username} could not be found in the user list")
        doc = self.users[username]
        doc.pop("personal_info", None)
        doc.pop("opts", None)
        if personal_info:
            doc["personal_info"] = copy.deepcopy(personal_info)
        if opts:
            doc["opts"] = copy.deepcopy(opts)
        return await self.read_user(username)

    async def delete_user(self, username: str) -> None:
        if username not in self.users:
            raise UserNotFoundError(f"User {username} could not be found in the user list")
        del self.users[username]
        self.deleted.append(username)

    async def check_password(self, username: str, password: str) -> bool:
        if not password:
            raise ValueError("Invalid password")
        if username not in self.users:
            raise UserNotFoundError(f"User {username} could not be found in the user list")
        return self.users[username].get("password") == password

    async def read_user_from_account(self, account_number: str) -> dict:
        for doc in self.users.values():
            if (doc.get("personal_info") or {}).get("account_number") == account_number:
                return await self.read_user(doc["_id"])
        raise UserNotFoundError(f"Account {account_number} could not be found in the user list")


def make_context(agent: FakeAgent | None = None, users: FakeUserStore | None = None, **kwargs: Any) -> FlowContext:
    kwargs.setdefault("wait_retries", 3)
    kwargs.setdefault("wait_interval_ms", 0)
    return FlowContext(agent=agent or FakeAgent(), users=users or FakeUserStore(), **kwargs)


def alice(**overrides: Any) -> dict:
    doc = {
        "_id": "alice@example.com",
        "email": "alice@example.com",
        "type": "user",
        "password": "secret",
        "personal_info": {"first_name": "Alice", "last_name": "Smith", "account_number": "acc-1"},
        "opts": {"invitation_url": "https://alice.example.com/invite"},
    }
    doc.update(overrides)
    return doc


async def wait_for_status(flow, status, attempts: int = 200) -> None:
    """Yield to the event loop until ``flow`` reaches ``status``."""
    for _ in range(attempts):
        if flow.status == status:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"flow stayed in {flow.status} waiting for {status}")
