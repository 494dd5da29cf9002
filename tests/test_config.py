"""AppSettings loading, validation and collaborator builders."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from fakes import FakeAgent
from ssi_demo.branding import NullCardRenderer, NullImageProvider, StaticImageProvider
from ssi_demo.config import (
    AppSettings,
    build_card_renderer,
    build_icon_provider,
    build_login_helper,
    build_signup_helper,
)
from ssi_demo.helpers import AccountSignupHelper, FileProofHelper, NullProofHelper

BASE_ENV = {"DB_CONNECTION_STRING": "http://admin:pw@couch.test:5984"}


def _from_env(**extra):
    with patch.dict(os.environ, {**BASE_ENV, **extra}, clear=True):
        return AppSettings.from_env()


class TestFromEnv:
    def test_defaults(self):
        s = _from_env()
        assert s.app_name == "bbcu"
        assert s.db_name == "users"
        assert s.wait_retries == 30
        assert s.wait_interval_ms == 3000
        assert s.login_proof_provider == "file"
        assert s.signup_proof_provider == "none"
        assert s.accept_incoming_connections is False

    def test_overrides(self):
        s = _from_env(
            APP_NAME="dmv",
            AGENT_WAIT_RETRIES="5",
            AGENT_WAIT_INTERVAL_MS="100",
            FLOW_TTL_SECONDS="30",
            ACCEPT_INCOMING_CONNECTIONS="true",
            LOG_LEVEL="debug",
        )
        assert s.app_name == "dmv"
        assert s.wait_retries == 5
        assert s.wait_interval_ms == 100
        assert s.flow_ttl_seconds == 30
        assert s.accept_incoming_connections is True
        assert s.log_level == "DEBUG"

    def test_secret_not_in_repr(self):
        assert "hunter2" not in repr(_from_env(SESSION_SECRET="hunter2"))

    def test_session_secret_generated_when_unset(self):
        first, second = _from_env(), _from_env()
        assert len(first.session_secret) == 64
        assert first.session_secret != second.session_secret
        assert _from_env(SESSION_SECRET="s3cret").session_secret == "s3cret"

    def test_admin_credentials(self):
        assert not _from_env().admin_protected
        s = _from_env(ADMIN_API_USERNAME="admin", ADMIN_API_PASSWORD="opensesame")
        assert s.admin_protected
        assert "opensesame" not in repr(s)

    def test_frozen(self):
        s = _from_env()
        with pytest.raises(AttributeError):
            s.app_name = "other"  # type: ignore[misc]


class TestValidation:
    def test_db_required(self):
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ValueError, match="DB_CONNECTION_STRING"):
                AppSettings.from_env()

    def test_integer_env(self):
        with pytest.raises(ValueError, match="AGENT_WAIT_RETRIES"):
            _from_env(AGENT_WAIT_RETRIES="many")

    @pytest.mark.parametrize("env, variable", [
        ({"AGENT_WAIT_RETRIES": "0"}, "AGENT_WAIT_RETRIES"),
        ({"RATE_LIMIT_FLOWS_PER_MIN": "0"}, "RATE_LIMIT_FLOWS_PER_MIN"),
        ({"ADMIN_API_USERNAME": "admin"}, "ADMIN_API_PASSWORD"),
        ({"ADMIN_API_PASSWORD": "pw"}, "ADMIN_API_USERNAME"),
        ({"CARD_IMAGE_RENDERING": "svg"}, "CARD_IMAGE_RENDERING"),
        ({"CARD_IMAGE_RENDERING": "static"}, "STATIC_CARD_FRONT_IMAGE"),
        ({"CONNECTION_IMAGE_PROVIDER": "static"}, "CONNECTION_ICON_PATH"),
        ({"LOGIN_PROOF_PROVIDER": "ldap"}, "LOGIN_PROOF_PROVIDER"),
        ({"SIGNUP_PROOF_PROVIDER": "account"}, "SIGNUP_DMV_ISSUER_AGENT"),
        ({"SIGNUP_PROOF_PROVIDER": "account", "SIGNUP_DMV_ISSUER_AGENT": "https://dmv"}, "SIGNUP_HR_ISSUER_AGENT"),
    ])
    def test_names_variable(self, env, variable):
        with pytest.raises(ValueError, match=variable):
            _from_env(**env)


class TestBuilders:
    def test_defaults(self):
        s = _from_env()
        assert isinstance(build_card_renderer(s), NullCardRenderer)
        assert isinstance(build_icon_provider(s), NullImageProvider)
        assert isinstance(build_login_helper(s), FileProofHelper)
        assert build_signup_helper(s, FakeAgent()) is None

    def test_null_login_helper(self):
        assert isinstance(build_login_helper(_from_env(LOGIN_PROOF_PROVIDER="none")), NullProofHelper)

    def test_static_icon(self, tmp_path):
        icon = tmp_path / "icon.png"
        icon.write_bytes(b"\x89PNG")
        s = _from_env(CONNECTION_IMAGE_PROVIDER="static", CONNECTION_ICON_PATH=str(icon))
        assert isinstance(build_icon_provider(s), StaticImageProvider)

    def test_account_signup_helper(self):
        s = _from_env(
            SIGNUP_PROOF_PROVIDER="account",
            SIGNUP_DMV_ISSUER_AGENT="https://dmv.example.com/invite",
            SIGNUP_HR_ISSUER_AGENT="https://hr.example.com/invite",
        )
        helper = build_signup_helper(s, FakeAgent())
        assert isinstance(helper, AccountSignupHelper)
        assert helper.config.dmv_invitation_url == "https://dmv.example.com/invite"


class TestBranding:
    @pytest.mark.asyncio
    async def test_static_icon_data_uri(self, tmp_path):
        icon = tmp_path / "icon.png"
        icon.write_bytes(b"\x89PNG")
        provider = StaticImageProvider(str(icon))
        assert await provider.get_image() == "data:image/png;base64,iVBORw=="

    def test_not_an_image(self, tmp_path):
        path = tmp_path / "icon.txt"
        path.write_text("hi")
        with pytest.raises(ValueError):
            StaticImageProvider(str(path))
