"""Signup flow: create an account from a proof and issue the app's credential.

Verifies:
  1. In-band signup creates the user and issues the credential
  2. Invitation signup stores the invitation URL on the user
  3. An existing username → USER_ALREADY_EXISTS before any connection is made
  4. Credential rejected after user creation → user record removed
  5. QR code signup keys the user by a random ID and stores the wallet's iurl
  6. Account helper with a non-US country → NOT_A_US_RESIDENT, no user created
"""

from __future__ import annotations

import uuid

import pytest

from fakes import HOLDER_IURL, FakeAgent, FakeUserStore, alice, make_context
from ssi_demo.config import DATA_DIR
from ssi_demo.flows import ConnectionMethod, FlowStatus, SignupFlow
from ssi_demo.helpers import AccountHelperConfig, AccountSignupHelper, NullProofHelper

ACCOUNT_TEMPLATE = str(DATA_DIR / "account_signup_proof_schema.json")


def _agent(attr_names=("email",)) -> FakeAgent:
    agent = FakeAgent()
    agent.schema["attr_names"] = list(attr_names)
    return agent


def _signup(agent, users, helper=None, **kwargs) -> SignupFlow:
    kwargs.setdefault("user", "bob@example.com")
    kwargs.setdefault("password", "hunter2")
    kwargs.setdefault("agent_name", "bob-agent")
    return SignupFlow("signup-1", make_context(agent, users), helper or NullProofHelper(), **kwargs)


def account_proof(country: str = "United States") -> list[dict]:
    values = {
        "first_name": "Bob",
        "firstname": "bob",
        "last_name": "Jones",
        "lastname": "JONES",
        "dob": "1990-04-01",
        "address_line_1": "1 Main St",
        "state": "NY",
        "zip_code": "10001",
        "country": country,
        "socialsecuritynumber": "123-45-6789",
    }
    return [{"name": k, "value": v, "cred_def_id": "cd-issuer"} for k, v in values.items()]


class TestSignup:
    @pytest.mark.asyncio
    async def test_in_band_signup(self):
        agent = _agent()
        users = FakeUserStore()
        flow = _signup(agent, users)
        await flow.start()

        assert flow.status == FlowStatus.FINISHED
        assert flow.history == [
            FlowStatus.CREATED,
            FlowStatus.ESTABLISHING_CONNECTION,
            FlowStatus.CHECKING_CREDENTIAL,
            FlowStatus.ISSUING_CREDENTIAL,
            FlowStatus.FINISHED,
        ]
        assert agent.called("create_connection") == [({"name": "bob-agent"}, None)]
        doc = users.users["bob@example.com"]
        assert doc["password"] == "hunter2"
        assert doc["personal_info"] == {"email": "bob@example.com"}
        assert doc["opts"] == {"agent_name": "bob-agent", "mobile_user": False}
        (_to, _schema, attributes, _props), = agent.called("offer_credential")
        assert attributes == {"email": "bob@example.com"}
        assert len(agent.called("delete_verification")) == 1

    @pytest.mark.asyncio
    async def test_invitation_signup(self):
        agent = _agent()
        users = FakeUserStore()
        flow = _signup(
            agent, users,
            agent_name="https://bob.example.com/invite",
            connection_method=ConnectionMethod.INVITATION,
        )
        await flow.start()

        assert flow.status == FlowStatus.FINISHED
        assert agent.called("accept_invitation") == [("https://bob.example.com/invite", None)]
        assert users.users["bob@example.com"]["opts"] == {
            "invitation_url": "https://bob.example.com/invite",
            "mobile_user": False,
        }

    @pytest.mark.asyncio
    async def test_existing_user(self):
        agent = _agent()
        users = FakeUserStore(alice())
        flow = _signup(agent, users, user="alice@example.com")
        await flow.start()

        assert flow.get_status()["error"] == "USER_ALREADY_EXISTS"
        assert agent.called("create_connection") == []
        assert agent.called("create_proof_schema") == []

    @pytest.mark.asyncio
    async def test_rejected_credential_removes_user(self):
        agent = _agent()
        agent.credential_state = "rejected"
        users = FakeUserStore()
        flow = _signup(agent, users)
        await flow.start()

        assert flow.get_status()["error"] == "CREDENTIAL_NOT_ACCEPTED"
        assert users.users == {}
        assert users.deleted == ["bob@example.com"]
        assert len(agent.called("delete_connection")) == 1

    @pytest.mark.asyncio
    async def test_missing_schema_attribute_creates_no_user(self):
        agent = _agent(attr_names=("email", "account_number"))
        users = FakeUserStore()
        flow = _signup(agent, users)
        await flow.start()

        assert flow.get_status()["error"] == "INVALID_USER_ATTRIBUTES"
        assert users.users == {}


class TestQRSignup:
    @pytest.mark.asyncio
    async def test_wallet_signup(self):
        agent = _agent()
        agent.inbound_connections = [{
            "id": "conn-in",
            "state": "inbound_offer",
            "remote": {"properties": {"meta": {"nonce": "nonce-9"}}},
        }]
        agent.inbound_verifications = [{
            "id": "ver-in",
            "state": "inbound_verification_request",
            "properties": {"meta": {"nonce": "nonce-9"}},
        }]
        users = FakeUserStore()
        flow = SignupFlow("signup-1", make_context(agent, users), NullProofHelper(), qr_code_nonce="nonce-9",
                          connection_method=ConnectionMethod.QR_CODE)
        await flow.start()

        assert flow.status == FlowStatus.FINISHED
        assert FlowStatus.WAITING_FOR_OFFER in flow.history
        uuid.UUID(flow.user)
        doc = users.users[flow.user]
        assert doc["password"] is None
        assert doc["opts"] == {"agent_name": HOLDER_IURL, "mobile_user": True}
        assert agent.called("accept_connection") == [("conn-in",)]
        assert agent.called("update_verification") == [("ver-in", "outbound_proof_request")]


class TestAccountSignup:
    @pytest.fixture
    def agent(self):
        agent = _agent(attr_names=("first_name", "last_name", "account_number"))
        agent.routed_cred_defs = {
            "trustedDMV:true": {"agents": [{"results": {"items": [{"id": "cd-dmv"}]}}]},
            "trustedHR:true": {"agents": [{"results": {"items": [{"id": "cd-hr"}]}}]},
        }
        return agent

    @pytest.fixture
    def helper(self, agent):
        config = AccountHelperConfig(
            dmv_invitation_url="https://dmv.example.com/invite",
            hr_invitation_url="https://hr.example.com/invite",
            proof_schema_path=ACCOUNT_TEMPLATE,
        )
        return AccountSignupHelper(config, agent)

    @pytest.mark.asyncio
    async def test_canadian_signup_rejected(self, agent, helper):
        agent.proof_attributes = account_proof(country="Canada")
        users = FakeUserStore()
        flow = _signup(agent, users, helper)
        await flow.start()

        status = flow.get_status()
        assert status["status"] == "ERROR"
        assert status["error"] == "NOT_A_US_RESIDENT"
        assert "Canada" in status["reason"]
        assert users.users == {}
        assert agent.called("offer_credential") == []
        assert len(agent.called("delete_verification")) == 1

    @pytest.mark.asyncio
    async def test_us_signup_gets_account_number(self, agent, helper):
        agent.proof_attributes = account_proof()
        users = FakeUserStore()
        flow = _signup(agent, users, helper)
        await flow.start()

        assert flow.status == FlowStatus.FINISHED
        info = users.users["bob@example.com"]["personal_info"]
        assert info["first_name"] == "Bob"
        assert info["postal_code"] == "10001"
        assert info["middle_name"] == "_"
        assert info["email"] == "bob@example.com"
        (_to, _schema, attributes, _props), = agent.called("offer_credential")
        assert attributes["account_number"] == info["account_number"]
