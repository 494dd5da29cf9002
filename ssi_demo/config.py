"""Application settings and the builders that turn them into collaborators.

All values come from environment variables (a ``.env`` file is loaded at
startup when python-dotenv finds one). Misconfiguration raises ValueError at
startup, naming the variable to fix.
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ssi_demo.branding import (
    CardRenderer,
    ImageProvider,
    NullCardRenderer,
    NullImageProvider,
    StaticCardRenderer,
    StaticImageProvider,
)
from ssi_demo.helpers import (
    AccountHelperConfig,
    AccountSignupHelper,
    FileProofHelper,
    NullProofHelper,
    ProofHelper,
    SignupHelper,
)

DATA_DIR = Path(__file__).parent / "data"

logger = logging.getLogger("ssi_demo.config")

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT)


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("true", "1", "yes")


def _generated_secret() -> str:
    logger.warning("SESSION_SECRET is not set; sessions will not survive a restart")
    return secrets.token_hex(32)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class AppSettings:
    """Immutable settings for one demo app process."""

    app_name: str = "bbcu"
    session_secret: str = field(default="", repr=False)
    log_level: str = "INFO"

    admin_username: str = ""
    admin_password: str = field(default="", repr=False)
    flow_rate_limit: int = 30

    wait_retries: int = 30
    wait_interval_ms: int = 3000
    flow_ttl_seconds: int = 600
    reaper_interval_seconds: int = 60

    db_url: str = ""
    db_name: str = "users"

    card_image_rendering: str = "none"
    static_card_front_image: str = ""
    static_card_back_image: str = ""

    connection_image_provider: str = "none"
    connection_icon_path: str = ""

    login_proof_provider: str = "file"
    login_proof_path: str = str(DATA_DIR / "login_proof_schema.json")

    signup_proof_provider: str = "none"
    signup_account_proof_path: str = str(DATA_DIR / "account_signup_proof_schema.json")
    signup_dmv_issuer_agent: str = ""
    signup_hr_issuer_agent: str = ""

    schema_template_path: str = str(DATA_DIR / "credential_schema.json")

    accept_incoming_connections: bool = False

    @classmethod
    def from_env(cls) -> AppSettings:
        defaults = cls()
        settings = cls(
            app_name=os.getenv("APP_NAME", defaults.app_name),
            session_secret=os.getenv("SESSION_SECRET") or _generated_secret(),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            admin_username=os.getenv("ADMIN_API_USERNAME", ""),
            admin_password=os.getenv("ADMIN_API_PASSWORD", ""),
            flow_rate_limit=_int_env("RATE_LIMIT_FLOWS_PER_MIN", defaults.flow_rate_limit),
            wait_retries=_int_env("AGENT_WAIT_RETRIES", defaults.wait_retries),
            wait_interval_ms=_int_env("AGENT_WAIT_INTERVAL_MS", defaults.wait_interval_ms),
            flow_ttl_seconds=_int_env("FLOW_TTL_SECONDS", defaults.flow_ttl_seconds),
            reaper_interval_seconds=_int_env("FLOW_REAPER_INTERVAL_SECONDS", defaults.reaper_interval_seconds),
            db_url=os.getenv("DB_CONNECTION_STRING", defaults.db_url),
            db_name=os.getenv("DB_USERS", defaults.db_name),
            card_image_rendering=os.getenv("CARD_IMAGE_RENDERING", defaults.card_image_rendering).lower(),
            static_card_front_image=os.getenv("STATIC_CARD_FRONT_IMAGE", ""),
            static_card_back_image=os.getenv("STATIC_CARD_BACK_IMAGE", ""),
            connection_image_provider=os.getenv("CONNECTION_IMAGE_PROVIDER", defaults.connection_image_provider).lower(),
            connection_icon_path=os.getenv("CONNECTION_ICON_PATH", ""),
            login_proof_provider=os.getenv("LOGIN_PROOF_PROVIDER", defaults.login_proof_provider).lower(),
            login_proof_path=os.getenv("LOGIN_PROOF_PATH", defaults.login_proof_path),
            signup_proof_provider=os.getenv("SIGNUP_PROOF_PROVIDER", defaults.signup_proof_provider).lower(),
            signup_account_proof_path=os.getenv("SIGNUP_ACCOUNT_PROOF_PATH", defaults.signup_account_proof_path),
            signup_dmv_issuer_agent=os.getenv("SIGNUP_DMV_ISSUER_AGENT", ""),
            signup_hr_issuer_agent=os.getenv("SIGNUP_HR_ISSUER_AGENT", ""),
            schema_template_path=os.getenv("SCHEMA_TEMPLATE_PATH", defaults.schema_template_path),
            accept_incoming_connections=_bool_env("ACCEPT_INCOMING_CONNECTIONS"),
        )
        settings.validate()
        return settings

    @property
    def admin_protected(self) -> bool:
        return bool(self.admin_username and self.admin_password)

    def validate(self) -> None:
        if not self.session_secret:
            raise ValueError("SESSION_SECRET must be set")
        if bool(self.admin_username) != bool(self.admin_password):
            raise ValueError("ADMIN_API_USERNAME and ADMIN_API_PASSWORD must be set together")
        if self.flow_rate_limit < 1:
            raise ValueError("RATE_LIMIT_FLOWS_PER_MIN must be >= 1")
        if self.wait_retries < 1:
            raise ValueError("AGENT_WAIT_RETRIES must be >= 1")
        if self.wait_interval_ms < 0:
            raise ValueError("AGENT_WAIT_INTERVAL_MS must be >= 0")
        if self.flow_ttl_seconds <= 0:
            raise ValueError("FLOW_TTL_SECONDS must be > 0")
        if not self.db_url:
            raise ValueError("DB_CONNECTION_STRING must be set")

        if self.card_image_rendering not in ("none", "static"):
            raise ValueError(f"Invalid CARD_IMAGE_RENDERING {self.card_image_rendering!r}; expected none or static")
        if self.card_image_rendering == "static" and not (self.static_card_front_image and self.static_card_back_image):
            raise ValueError(
                "STATIC_CARD_FRONT_IMAGE and STATIC_CARD_BACK_IMAGE must be set when CARD_IMAGE_RENDERING is static"
            )

        if self.connection_image_provider not in ("none", "static"):
            raise ValueError(
                f"Invalid CONNECTION_IMAGE_PROVIDER {self.connection_image_provider!r}; expected none or static"
            )
        if self.connection_image_provider == "static" and not self.connection_icon_path:
            raise ValueError("CONNECTION_ICON_PATH must be set when CONNECTION_IMAGE_PROVIDER is static")

        if self.login_proof_provider not in ("file", "none"):
            raise ValueError(f"Invalid LOGIN_PROOF_PROVIDER {self.login_proof_provider!r}; expected file or none")
        if self.login_proof_provider == "file" and not self.login_proof_path:
            raise ValueError("LOGIN_PROOF_PATH must be set when LOGIN_PROOF_PROVIDER is file")

        if self.signup_proof_provider not in ("account", "none"):
            raise ValueError(f"Invalid SIGNUP_PROOF_PROVIDER {self.signup_proof_provider!r}; expected account or none")
        if self.signup_proof_provider == "account":
            if not self.signup_dmv_issuer_agent:
                raise ValueError("SIGNUP_DMV_ISSUER_AGENT must be set when SIGNUP_PROOF_PROVIDER is account")
            if not self.signup_hr_issuer_agent:
                raise ValueError("SIGNUP_HR_ISSUER_AGENT must be set when SIGNUP_PROOF_PROVIDER is account")


# ----------------------------------------------------------------------
# Builders
# ----------------------------------------------------------------------


def build_card_renderer(settings: AppSettings) -> CardRenderer:
    if settings.card_image_rendering == "static":
        return StaticCardRenderer(settings.static_card_front_image, settings.static_card_back_image)
    return NullCardRenderer()


def build_icon_provider(settings: AppSettings) -> ImageProvider:
    if settings.connection_image_provider == "static":
        return StaticImageProvider(settings.connection_icon_path)
    return NullImageProvider()


def build_login_helper(settings: AppSettings) -> ProofHelper:
    if settings.login_proof_provider == "file":
        return FileProofHelper(settings.login_proof_path)
    return NullProofHelper(pass_proofs=True)


def build_signup_helper(settings: AppSettings, agent: Any) -> SignupHelper | None:
    """Return the signup helper, or None when VC signups are disabled."""
    if settings.signup_proof_provider == "account":
        config = AccountHelperConfig(
            dmv_invitation_url=settings.signup_dmv_issuer_agent,
            hr_invitation_url=settings.signup_hr_issuer_agent,
            proof_schema_path=settings.signup_account_proof_path,
        )
        return AccountSignupHelper(config, agent)
    return None
