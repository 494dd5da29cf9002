"""Cloud agent client: settings, request plumbing and bounded waits.

Verifies:
  1. AgentSettings.from_env defaults and overrides
  2. base_url, basic auth and headers
  3. HTTP errors and transport errors raise AgentError
  4. list endpoints unwrap {"items": [...]}; routed cred def queries do not
  5. query filters are sent JSON-encoded
  6. wait_for_* polls until a done state, fails fast on a failed state and
     gives up after the configured number of attempts
  7. issuer setup calls publish schemas and credential definitions and list
     proof schemas and invitations
"""

from __future__ import annotations

import json
import os
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from ssi_demo.agent import AgentClient, AgentError, AgentSettings


def _response(status_code: int = 200, body=None, method: str = "GET", path: str = "/") -> httpx.Response:
    request = httpx.Request(method, f"http://agent.test/api/v1{path}")
    if body is None:
        return httpx.Response(status_code, request=request, text="")
    return httpx.Response(status_code, request=request, json=body)


def _client() -> AgentClient:
    return AgentClient(AgentSettings(account_url="http://agent.test", agent_name="bank", agent_password="pw"))


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestAgentSettings:
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            s = AgentSettings.from_env()
        assert s.account_url == "http://localhost:8000"
        assert s.agent_name == ""
        assert s.timeout == 120
        assert s.auth is None

    def test_env_override(self):
        env = {
            "ACCOUNT_URL": "https://agents.example.com/",
            "AGENT_NAME": "bank",
            "AGENT_PASSWORD": "s3cret",
            "AGENT_TIMEOUT": "30",
        }
        with patch.dict(os.environ, env, clear=True):
            s = AgentSettings.from_env()
        assert s.base_url == "https://agents.example.com/api/v1"
        assert s.auth == ("bank", "s3cret")
        assert s.friendly_name == "bank"
        assert s.timeout == 30

    def test_password_not_in_repr(self):
        assert "s3cret" not in repr(AgentSettings(agent_name="bank", agent_password="s3cret"))

    def test_client_base_url(self):
        client = _client()
        assert str(client._client.base_url).rstrip("/") == "http://agent.test/api/v1"
        assert client.name == "bank"


# ---------------------------------------------------------------------------
# Request plumbing
# ---------------------------------------------------------------------------


class TestRequests:
    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        client = _client()
        client._client.request = AsyncMock(return_value=_response(404, {"message": "nope"}, path="/connections/x"))

        with pytest.raises(AgentError) as exc:
            await client.get_connection("x")
        assert exc.value.status_code == 404
        assert "nope" in exc.value.detail

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        client = _client()
        client._client.request = AsyncMock(side_effect=httpx.ConnectError("Connection refused"))

        with pytest.raises(AgentError) as exc:
            await client.get_identity()
        assert exc.value.status_code is None

    @pytest.mark.asyncio
    async def test_empty_body_is_empty_dict(self):
        client = _client()
        client._client.request = AsyncMock(return_value=_response(200, None, method="DELETE"))
        assert await client.delete_connection("conn-1") == {}
        client._client.request.assert_called_once_with("DELETE", "/connections/conn-1", json=None, params=None)

    @pytest.mark.asyncio
    async def test_items_unwrapped(self):
        client = _client()
        client._client.request = AsyncMock(return_value=_response(200, {"items": [{"id": "cd-1"}]}))
        assert await client.get_credential_definitions() == [{"id": "cd-1"}]

    @pytest.mark.asyncio
    async def test_routed_cred_defs_returned_raw(self):
        routed = {"agents": [{"results": {"items": [{"id": "cd-dmv"}]}}]}
        client = _client()
        client._client.request = AsyncMock(return_value=_response(200, routed))

        assert await client.get_credential_definitions(route="trustedDMV:true") == routed
        client._client.request.assert_called_once_with(
            "GET", "/credential_definitions", json=None, params={"route": "trustedDMV:true"},
        )

    @pytest.mark.asyncio
    async def test_filter_json_encoded(self):
        client = _client()
        client._client.request = AsyncMock(return_value=_response(200, {"items": []}))

        await client.get_connections({"remote.properties.meta.nonce": "n-1"})
        _, kwargs = client._client.request.call_args
        assert json.loads(kwargs["params"]["filter"]) == {"remote.properties.meta.nonce": "n-1"}

    @pytest.mark.asyncio
    async def test_offer_credential_payload(self):
        client = _client()
        client._client.request = AsyncMock(return_value=_response(200, {"id": "cred-1"}, method="POST"))

        await client.offer_credential(
            {"did": "did:sov:holder"},
            {"schema_name": "Bank Account", "schema_version": "1.0"},
            {"first_name": "Alice"},
        )
        _, kwargs = client._client.request.call_args
        assert kwargs["json"] == {
            "to": {"did": "did:sov:holder"},
            "state": "outbound_offer",
            "schema_name": "Bank Account",
            "schema_version": "1.0",
            "attributes": {"first_name": "Alice"},
            "properties": {},
        }


# ---------------------------------------------------------------------------
# Bounded waits
# ---------------------------------------------------------------------------


class TestWaits:
    @pytest.mark.asyncio
    async def test_wait_until_connected(self):
        client = _client()
        client._client.request = AsyncMock(side_effect=[
            _response(200, {"id": "c", "state": "outbound_offer"}),
            _response(200, {"id": "c", "state": "connected"}),
        ])
        record = await client.wait_for_connection("c", retries=5, interval_ms=0)
        assert record["state"] == "connected"
        assert client._client.request.call_count == 2

    @pytest.mark.asyncio
    async def test_failed_state_fails_fast(self):
        client = _client()
        client._client.request = AsyncMock(return_value=_response(200, {"id": "c", "state": "rejected"}))
        with pytest.raises(AgentError):
            await client.wait_for_connection("c", retries=5, interval_ms=0)
        assert client._client.request.call_count == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        client = _client()
        client._client.request = AsyncMock(return_value=_response(200, {"id": "v", "state": "outbound_proof_request"}))
        with pytest.raises(AgentError, match="took too long"):
            await client.wait_for_verification("v", retries=3, interval_ms=0)
        assert client._client.request.call_count == 3

    @pytest.mark.asyncio
    async def test_failed_verification_is_returned(self):
        client = _client()
        client._client.request = AsyncMock(return_value=_response(200, {"id": "v", "state": "failed"}))
        record = await client.wait_for_verification("v", retries=3, interval_ms=0)
        assert record["state"] == "failed"


# ---------------------------------------------------------------------------
# Issuer setup
# ---------------------------------------------------------------------------


class TestIssuerSetup:
    @pytest.mark.asyncio
    async def test_create_credential_definition(self):
        client = _client()
        client._client.request = AsyncMock(return_value=_response(201, {"id": "cd-2"}, method="POST"))

        assert await client.create_credential_definition("schema-1") == {"id": "cd-2"}
        client._client.request.assert_called_once_with(
            "POST", "/credential_definitions", json={"schema_id": "schema-1"}, params=None,
        )

    @pytest.mark.asyncio
    async def test_create_credential_schema(self):
        client = _client()
        client._client.request = AsyncMock(return_value=_response(201, {"id": "s-1"}, method="POST"))

        await client.create_credential_schema("Bank Account", "1.1", ["first_name"])
        client._client.request.assert_called_once_with(
            "POST", "/credential_schemas",
            json={"name": "Bank Account", "version": "1.1", "attributes": ["first_name"]}, params=None,
        )

    @pytest.mark.asyncio
    async def test_get_credential_schemas(self):
        client = _client()
        client._client.request = AsyncMock(return_value=_response(200, {"items": [{"id": "s-1"}]}))
        assert await client.get_credential_schemas() == [{"id": "s-1"}]

    @pytest.mark.asyncio
    async def test_get_proof_schemas_by_name(self):
        client = _client()
        client._client.request = AsyncMock(return_value=_response(200, {"items": []}))

        await client.get_proof_schemas({"name": "Bank Account Login"})
        args, kwargs = client._client.request.call_args
        assert args == ("GET", "/proof_schemas")
        assert json.loads(kwargs["params"]["filter"]) == {"name": "Bank Account Login"}

    @pytest.mark.asyncio
    async def test_get_invitations(self):
        client = _client()
        client._client.request = AsyncMock(return_value=_response(200, [{"id": "inv-1"}]))

        assert await client.get_invitations({"max_acceptances": -1}) == [{"id": "inv-1"}]
        _, kwargs = client._client.request.call_args
        assert json.loads(kwargs["params"]["filter"]) == {"max_acceptances": -1}

    def test_identity_properties(self):
        client = AgentClient(AgentSettings(
            account_url="http://agent.test", agent_name="bank", agent_password="pw", friendly_name="Big Bank",
        ))
        assert client.name == "bank"
        assert client.friendly_name == "Big Bank"
        assert client.account_url == "http://agent.test"
