"""Async cloud agent REST API client using httpx."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any
from urllib.parse import quote

import httpx

from ssi_demo.agent.config import AgentSettings

logger = logging.getLogger("ssi_demo.agent")

# Terminal states reported by the agent for each record type.
CONNECTION_DONE_STATES = frozenset({"connected"})
CONNECTION_FAILED_STATES = frozenset({"rejected", "deleted"})
CREDENTIAL_DONE_STATES = frozenset({"issued", "rejected", "failed", "deleted"})
VERIFICATION_DONE_STATES = frozenset({"passed", "failed", "rejected"})


class AgentError(Exception):
    """A call to the cloud agent failed.

    ``status_code`` and ``detail`` are set when the agent answered with an
    HTTP error; transport failures leave them as None.
    """

    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class AgentClient:
    """Thin async wrapper around the cloud agent REST API."""

    def __init__(self, settings: AgentSettings) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.base_url,
            headers=settings.headers,
            auth=settings.auth,
            timeout=httpx.Timeout(settings.timeout, connect=10.0),
        )

    @property
    def name(self) -> str:
        return self._settings.agent_name

    @property
    def friendly_name(self) -> str:
        return self._settings.friendly_name

    @property
    def account_url(self) -> str:
        return self._settings.account_url

    async def close(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        try:
            r = await self._client.request(method, path, json=payload, params=params)
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("%s %s -> %s", method, path, e.response.status_code)
            raise AgentError(
                f"{method} {path} failed with HTTP {e.response.status_code}",
                status_code=e.response.status_code,
                detail=e.response.text,
            ) from e
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise AgentError(f"{method} {path} failed: {e}") from e
        return r.json() if r.text.strip() else {}

    async def _get(self, path: str, params: dict | None = None) -> Any:
        return await self._request("GET", path, params=params)

    async def _post(self, path: str, payload: dict | None = None) -> Any:
        return await self._request("POST", path, payload=payload or {})

    async def _patch(self, path: str, payload: dict | None = None) -> Any:
        return await self._request("PATCH", path, payload=payload or {})

    async def _delete(self, path: str) -> Any:
        return await self._request("DELETE", path)

    @staticmethod
    def _items(result: Any) -> list[dict]:
        if isinstance(result, list):
            return result
        if isinstance(result, dict):
            return result.get("items", [])
        return []

    @staticmethod
    def _filter(query: dict | None) -> dict | None:
        return {"filter": json.dumps(query)} if query else None

    async def _wait_for(
        self,
        kind: str,
        record_id: str,
        fetch,
        done_states: frozenset[str],
        failed_states: frozenset[str] = frozenset(),
        retries: int = 30,
        interval_ms: int = 3000,
    ) -> dict:
        """Poll ``fetch(record_id)`` until the record reaches a done state.

        Fails immediately on a failed state and after ``retries`` attempts
        with no terminal state.
        """
        for attempt in range(1, retries + 1):
            record = await fetch(record_id)
            state = record.get("state")
            logger.debug("%s %s state=%s (attempt %d/%d)", kind, record_id, state, attempt, retries)
            if state in done_states:
                return record
            if state in failed_states:
                raise AgentError(f"{kind} {record_id} entered state {state!r}")
            if attempt < retries:
                await asyncio.sleep(interval_ms / 1000)
        raise AgentError(f"{kind} {record_id} took too long: no terminal state after {retries} attempts")

    # ==================================================================
    # IDENTITY
    # ==================================================================

    async def get_identity(self) -> dict:
        return await self._get("/info")

    # ==================================================================
    # SCHEMAS AND CREDENTIAL DEFINITIONS
    # ==================================================================

    async def get_credential_definitions(self, route: str | None = None) -> Any:
        """List credential definitions.

        Without ``route`` this is the agent's own list. With a route such as
        ``"trustedDMV:true"`` the agent fans the query out to connected agents
        tagged with that property and returns ``{"agents": [...]}``.
        """
        if route:
            return await self._get("/credential_definitions", params={"route": route})
        return self._items(await self._get("/credential_definitions"))

    async def create_credential_definition(self, schema_id: str) -> dict:
        return await self._post("/credential_definitions", {"schema_id": schema_id})

    async def get_credential_schema(self, schema_id: str) -> dict:
        return await self._get(f"/credential_schemas/{quote(schema_id, safe='')}")

    async def get_credential_schemas(self) -> list[dict]:
        return self._items(await self._get("/credential_schemas"))

    async def create_credential_schema(self, name: str, version: str, attributes: list[str]) -> dict:
        return await self._post("/credential_schemas", {
            "name": name,
            "version": version,
            "attributes": attributes,
        })

    async def get_proof_schemas(self, query: dict | None = None) -> list[dict]:
        return self._items(await self._get("/proof_schemas", params=self._filter(query)))

    async def create_proof_schema(
        self,
        name: str,
        version: str,
        requested_attributes: dict | None = None,
        requested_predicates: dict | None = None,
    ) -> dict:
        return await self._post("/proof_schemas", {
            "name": name,
            "version": version,
            "requested_attributes": requested_attributes or {},
            "requested_predicates": requested_predicates or {},
        })

    # ==================================================================
    # CONNECTIONS
    # ==================================================================

    async def create_connection(self, to: dict | None, properties: dict | None = None) -> dict:
        payload: dict[str, Any] = {"state": "outbound_offer", "properties": properties or {}}
        if to:
            payload["to"] = to
        return await self._post("/connections", payload)

    async def accept_invitation(self, url: str, properties: dict | None = None) -> dict:
        return await self._post("/connections", {
            "to": {"url": url},
            "state": "outbound_offer",
            "properties": properties or {},
        })

    async def accept_connection(self, connection_id: str) -> dict:
        return await self._patch(f"/connections/{connection_id}", {"state": "connected"})

    async def get_connection(self, connection_id: str) -> dict:
        return await self._get(f"/connections/{connection_id}")

    async def get_connections(self, query: dict | None = None) -> list[dict]:
        return self._items(await self._get("/connections", params=self._filter(query)))

    async def delete_connection(self, connection_id: str) -> Any:
        return await self._delete(f"/connections/{connection_id}")

    async def wait_for_connection(self, connection_id: str, retries: int = 30, interval_ms: int = 3000) -> dict:
        return await self._wait_for(
            "Connection", connection_id, self.get_connection,
            CONNECTION_DONE_STATES, CONNECTION_FAILED_STATES, retries, interval_ms,
        )

    async def create_invitation(
        self,
        direct_route: bool = True,
        manual_accept: bool = False,
        max_acceptances: int = -1,
        properties: dict | None = None,
    ) -> dict:
        return await self._post("/invitations", {
            "direct_route": direct_route,
            "manual_accept": manual_accept,
            "max_acceptances": max_acceptances,
            "properties": properties or {},
        })

    async def get_invitations(self, query: dict | None = None) -> list[dict]:
        return self._items(await self._get("/invitations", params=self._filter(query)))

    # ==================================================================
    # CREDENTIALS
    # ==================================================================

    async def offer_credential(
        self,
        to: dict,
        schema: dict,
        attributes: dict[str, str],
        properties: dict | None = None,
    ) -> dict:
        return await self._post("/credentials", {
            "to": to,
            "state": "outbound_offer",
            "schema_name": schema.get("schema_name"),
            "schema_version": schema.get("schema_version"),
            "attributes": attributes,
            "properties": properties or {},
        })

    async def get_credential(self, credential_id: str) -> dict:
        return await self._get(f"/credentials/{credential_id}")

    async def delete_credential(self, credential_id: str) -> Any:
        return await self._delete(f"/credentials/{credential_id}")

    async def wait_for_credential(self, credential_id: str, retries: int = 30, interval_ms: int = 3000) -> dict:
        return await self._wait_for(
            "Credential", credential_id, self.get_credential,
            CREDENTIAL_DONE_STATES, retries=retries, interval_ms=interval_ms,
        )

    # ==================================================================
    # VERIFICATIONS
    # ==================================================================

    async def create_verification(
        self,
        to: dict,
        proof_schema_id: str,
        state: str = "outbound_proof_request",
        properties: dict | None = None,
    ) -> dict:
        return await self._post("/verifications", {
            "to": to,
            "proof_schema_id": proof_schema_id,
            "state": state,
            "properties": properties or {},
        })

    async def update_verification(self, verification_id: str, state: str) -> dict:
        return await self._patch(f"/verifications/{verification_id}", {"state": state})

    async def get_verification(self, verification_id: str) -> dict:
        return await self._get(f"/verifications/{verification_id}")

    async def get_verifications(self, query: dict | None = None) -> list[dict]:
        return self._items(await self._get("/verifications", params=self._filter(query)))

    async def delete_verification(self, verification_id: str) -> Any:
        return await self._delete(f"/verifications/{verification_id}")

    async def wait_for_verification(self, verification_id: str, retries: int = 30, interval_ms: int = 3000) -> dict:
        return await self._wait_for(
            "Verification", verification_id, self.get_verification,
            VERIFICATION_DONE_STATES, retries=retries, interval_ms=interval_ms,
        )
