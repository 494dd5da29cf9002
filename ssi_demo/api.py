"""FastAPI service for the verifiable credential demo apps.

The browser starts a flow and polls its status:

  Signup:    POST /signup            → flow ID stored in the session
             GET  /signup/status     → snapshot; FINISHED logs the new user in
  VC login:  POST /login/vc          → flow ID stored in the session
             GET  /login/vc/status   → snapshot; FINISHED logs the user in
  Issuance:  POST /api/credentials   → flow ID stored in the session
             GET  /api/credentials   → snapshot; terminal flows are dropped
             DELETE /api/credentials → stop the issuance

Flow failures never surface as HTTP errors. They are reported by the next
status poll as ``{"status": "ERROR", "error": <code>, "reason": <message>}``.

User administration and issuer setup routes live in ``ssi_demo.admin``.
"""

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.sessions import SessionMiddleware

from ssi_demo import admin
from ssi_demo.agent import AgentClient, AgentError, AgentSettings
from ssi_demo.branding import ImageProvider
from ssi_demo.config import (
    AppSettings,
    build_card_renderer,
    build_icon_provider,
    build_login_helper,
    build_signup_helper,
    configure_logging,
)
from ssi_demo.errors import FlowError, FlowNotFoundError, InvalidParametersError
from ssi_demo.flows import FlowContext, FlowStatus, IssuanceManager, LoginManager, SignupManager
from ssi_demo.helpers import AccountSignupHelper, ConnectionResponder
from ssi_demo.users import UserStore, UserStoreError

logger = logging.getLogger("ssi_demo.api")

# Error codes owned by the HTTP layer.
BAD_REQUEST = "BAD_REQUEST"
MISSING_REQUIRED_PARAMETERS = "MISSING_REQUIRED_PARAMETERS"
NOT_SIGNING_UP = "NOT_SIGNING_UP"
ALREADY_SIGNED_IN = "ALREADY_SIGNED_IN"
SIGNUPS_DISABLED = "SIGNUPS_DISABLED"
NOT_LOGGING_IN = "NOT_LOGGING_IN"
NOT_AUTHORIZED = "NOT_AUTHORIZED"
UNKNOWN_API_ERROR = "UNKNOWN_API_ERROR"

# Session keys.
USER_KEY = "user_id"
SIGNUP_KEY = "signup"
LOGIN_KEY = "vc_login"
ISSUANCE_KEY = "issuance_id"


@dataclass
class Services:
    """Everything the routes need, built once per process."""

    agent: AgentClient
    users: UserStore
    issuance: IssuanceManager
    login: LoginManager
    signup: SignupManager | None
    responder: ConnectionResponder | None = None
    icon_provider: ImageProvider | None = None

    @property
    def managers(self) -> tuple:
        return tuple(m for m in (self.issuance, self.login, self.signup) if m is not None)


async def build_services(settings: AppSettings, agent_settings: AgentSettings | None = None) -> Services:
    agent = AgentClient(agent_settings or AgentSettings.from_env())
    users = UserStore(settings.db_url, settings.db_name)
    await users.publish_indexes()

    icon_provider = build_icon_provider(settings)
    context = FlowContext(
        agent=agent,
        users=users,
        icon_provider=icon_provider,
        card_renderer=build_card_renderer(settings),
        wait_retries=settings.wait_retries,
        wait_interval_ms=settings.wait_interval_ms,
    )
    manager_opts = {
        "ttl_seconds": settings.flow_ttl_seconds,
        "reaper_interval_seconds": settings.reaper_interval_seconds,
    }

    signup_helper = build_signup_helper(settings, agent)
    if signup_helper is None:
        logger.info("VC signups are disabled")
    elif isinstance(signup_helper, AccountSignupHelper):
        # Reconnect to the issuers so the routed credential definition lookups work.
        await signup_helper.cleanup()
        await signup_helper.setup()

    responder = ConnectionResponder(agent) if settings.accept_incoming_connections else None

    return Services(
        agent=agent,
        users=users,
        issuance=IssuanceManager(context, **manager_opts),
        login=LoginManager(context, build_login_helper(settings), **manager_opts),
        signup=SignupManager(context, signup_helper, **manager_opts) if signup_helper is not None else None,
        responder=responder,
        icon_provider=icon_provider,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services from the environment unless they were injected."""
    settings: AppSettings = app.state.settings
    services: Services | None = getattr(app.state, "services", None)
    owned = services is None
    if owned:
        configure_logging(settings.log_level)
        logger.info("Starting %s demo app", settings.app_name)
        services = await build_services(settings)
        app.state.services = services
    if not settings.admin_protected:
        logger.warning("ADMIN_API_USERNAME and ADMIN_API_PASSWORD are not set; admin APIs are disabled")

    for manager in services.managers:
        manager.start_reaper()
    if services.responder is not None:
        services.responder.start()

    yield

    for manager in services.managers:
        await manager.stop_all()
    if services.responder is not None:
        await services.responder.stop()
    if owned:
        await services.agent.close()
        await services.users.close()
    logger.info("Shut down")


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    username: str | None = Field(None, description="Account name. May be empty for a QR code signup.")
    password: str | None = None
    agent_name: str | None = Field(
        None, description="Holder agent name or URL, or an invitation URL when connection_method is invitation.",
    )
    connection_method: str | None = Field(None, examples=["in_band", "out_of_band", "invitation"])
    qr_code_nonce: str | None = Field(None, description="Nonce shown in the QR code the wallet scanned.")


class PasswordLoginRequest(BaseModel):
    username: str | None = None
    password: str | None = None


class VCLoginRequest(BaseModel):
    username: str | None = None
    qr_code_nonce: str | None = None


class IssuanceRequest(BaseModel):
    connection_method: str | None = Field(None, examples=["in_band", "invitation", "qr_code"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

router = APIRouter()


def _error(status_code: int, code: str, reason: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, "reason": reason})


def _services(request: Request) -> Services:
    return request.app.state.services


def _not_found(request: Request, session_key: str, e: FlowNotFoundError) -> JSONResponse:
    request.session.pop(session_key, None)
    return _error(404, e.code.value, e.message)


def _signups_disabled() -> JSONResponse:
    return _error(400, SIGNUPS_DISABLED, "VC signups are not enabled on this app")


# ---------------------------------------------------------------------------
# Signup
# ---------------------------------------------------------------------------


async def start_signup(request: Request, body: SignupRequest):
    if request.session.get(USER_KEY):
        return _error(400, ALREADY_SIGNED_IN, "Cannot sign up if you're already logged in as a user")
    manager = _services(request).signup
    if manager is None:
        return _signups_disabled()
    if not body.qr_code_nonce:
        if not body.username:
            return _error(400, MISSING_REQUIRED_PARAMETERS, "You must supply a username in order to sign up")
        if not body.password:
            return _error(400, MISSING_REQUIRED_PARAMETERS, "You must supply a password in order to sign up")
        if not body.agent_name:
            return _error(400, MISSING_REQUIRED_PARAMETERS, "You must supply an agent name in order to sign up")
        if not body.connection_method:
            return _error(400, MISSING_REQUIRED_PARAMETERS, "Invalid connection_method for issuing the credential")

    try:
        signup_id = manager.create(
            body.username, body.agent_name, body.password, body.connection_method, body.qr_code_nonce,
        )
    except InvalidParametersError as e:
        return _error(400, e.code.value, e.message)

    request.session[SIGNUP_KEY] = signup_id
    return {"message": "Signup process initiated", "signup": signup_id}


@router.get("/signup/status", tags=["signup"])
async def signup_status(request: Request):
    if request.session.get(USER_KEY):
        return _error(400, ALREADY_SIGNED_IN, "Cannot sign up if you're already logged in as a user")
    signup_id = request.session.get(SIGNUP_KEY)
    if not signup_id:
        return _error(400, NOT_SIGNING_UP, "There is no signup process associated with this session")

    manager = _services(request).signup
    if manager is None:
        return _signups_disabled()
    try:
        status = manager.get_status(signup_id)
    except FlowNotFoundError as e:
        return _not_found(request, SIGNUP_KEY, e)

    if status["status"] == FlowStatus.FINISHED.value:
        request.session[USER_KEY] = manager.get_user(signup_id)
        manager.delete(signup_id)
        request.session.pop(SIGNUP_KEY, None)
        return {"message": "User has been signed up and logged in", "signup": status}
    return {"message": "Retrieved signup status", "signup": status}


@router.get("/signup/proofschema", tags=["signup"])
async def signup_proof_schema(request: Request):
    manager = _services(request).signup
    if manager is None:
        return _signups_disabled()
    try:
        proof_schema = await manager.get_signup_schema()
    except (AgentError, FlowError) as e:
        logger.error("Failed to build the signup proof schema: %s", e)
        return _error(500, getattr(getattr(e, "code", None), "value", UNKNOWN_API_ERROR), str(e))
    return {"message": "Proof schema retrieved", "proof_schema": proof_schema}


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@router.post("/login/userpass", tags=["login"])
async def password_login(request: Request, body: PasswordLoginRequest):
    if not body.username:
        return _error(400, BAD_REQUEST, "You must supply a username in order to log in")
    if body.password is None:
        return _error(400, BAD_REQUEST, "You must supply a password in order to log in")
    try:
        ok = await _services(request).users.check_password(body.username, body.password)
    except (FlowError, ValueError, UserStoreError):
        ok = False
    if not ok:
        return _error(401, NOT_AUTHORIZED, "Username or password was incorrect")
    request.session[USER_KEY] = body.username
    return {"message": "OK"}


@router.get("/logout", tags=["login"])
async def logout(request: Request):
    request.session.clear()
    return {"message": "Logged out"}


async def start_vc_login(request: Request, body: VCLoginRequest):
    if not body.qr_code_nonce and not body.username:
        return _error(400, BAD_REQUEST, "You must supply a username in order to log in")
    try:
        login_id = _services(request).login.create(body.username, body.qr_code_nonce)
    except InvalidParametersError as e:
        return _error(400, e.code.value, e.message)
    request.session[LOGIN_KEY] = login_id
    return {"message": "VC login process initiated", "vc_login": login_id}


@router.get("/login/vc/status", tags=["login"])
async def vc_login_status(request: Request):
    login_id = request.session.get(LOGIN_KEY)
    if not login_id:
        return _error(400, NOT_LOGGING_IN, "There is no VC login process associated with this session")

    manager = _services(request).login
    try:
        status = manager.get_status(login_id)
    except FlowNotFoundError as e:
        return _not_found(request, LOGIN_KEY, e)

    if status["status"] == FlowStatus.FINISHED.value:
        request.session[USER_KEY] = manager.get_user(login_id)
        manager.delete(login_id)
        request.session.pop(LOGIN_KEY, None)
        logger.info("VC login was successful for %s", request.session[USER_KEY])
        return {"message": "VC login was successful", "vc_login": status}
    return {"message": "Retrieved VC login status", "vc_login": status}


@router.post("/login/proofschema", status_code=201, tags=["login"])
async def publish_login_proof_schema(request: Request):
    try:
        proof_schema = await _services(request).login.publish_login_schema()
    except (AgentError, FlowError) as e:
        logger.error("Failed to publish the login proof schema: %s", e)
        return _error(500, getattr(getattr(e, "code", None), "value", UNKNOWN_API_ERROR), str(e))
    return {"message": "Login proof schema created", "proof_schema": proof_schema}


# ---------------------------------------------------------------------------
# Credential issuance
# ---------------------------------------------------------------------------


async def start_issuance(request: Request, body: IssuanceRequest | None = None):
    user = request.session.get(USER_KEY)
    if not user:
        return _error(401, NOT_AUTHORIZED, "You must be logged in to receive a credential")
    try:
        issuance_id = _services(request).issuance.create(user, body.connection_method if body else None)
    except InvalidParametersError as e:
        return _error(400, e.code.value, e.message)
    request.session[ISSUANCE_KEY] = issuance_id
    return {"message": "Credential issuance started", "issuance": issuance_id}


@router.get("/api/credentials", tags=["credentials"])
async def issuance_status(request: Request):
    if not request.session.get(USER_KEY):
        return _error(401, NOT_AUTHORIZED, "You must be logged in to receive a credential")
    issuance_id = request.session.get(ISSUANCE_KEY)
    if not issuance_id:
        return _error(400, BAD_REQUEST, "There is no issuance flow associated with this user")

    manager = _services(request).issuance
    try:
        status = manager.get_status(issuance_id)
    except FlowNotFoundError as e:
        return _not_found(request, ISSUANCE_KEY, e)

    if status["status"] in (FlowStatus.FINISHED.value, FlowStatus.ERROR.value, FlowStatus.STOPPED.value):
        manager.delete(issuance_id)
        request.session.pop(ISSUANCE_KEY, None)
    return {"message": "Got the issuance status", **status}


@router.delete("/api/credentials", tags=["credentials"])
async def stop_issuance(request: Request):
    if not request.session.get(USER_KEY):
        return _error(401, NOT_AUTHORIZED, "You must be logged in to stop an issuance")
    issuance_id = request.session.get(ISSUANCE_KEY)
    if not issuance_id:
        return _error(400, BAD_REQUEST, "There is no issuance flow associated with this user")
    try:
        _services(request).issuance.delete(issuance_id)
    except FlowNotFoundError as e:
        return _not_found(request, ISSUANCE_KEY, e)
    request.session.pop(ISSUANCE_KEY, None)
    return {"message": "Credential issuance stopped"}


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


@router.get("/health", tags=["system"])
async def health(request: Request) -> dict:
    """Health check. Verifies the API and the cloud agent are both up."""
    try:
        identity = await _services(request).agent.get_identity()
        agent_ok = True
        detail = {"name": identity.get("name")}
    except AgentError as e:
        agent_ok = False
        detail = {"error": str(e)}
    return {"api": "ok", "agent": "ok" if agent_ok else "unreachable", "agent_detail": detail}


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def _flow_router(limiter: Limiter, per_minute: int) -> APIRouter:
    """The flow-starting routes, rate limited by ``limiter``."""
    flows = APIRouter()
    limit = limiter.limit(f"{per_minute}/minute")
    flows.add_api_route("/signup", limit(start_signup), methods=["POST"], status_code=201, tags=["signup"])
    flows.add_api_route("/login/vc", limit(start_vc_login), methods=["POST"], status_code=201, tags=["login"])
    flows.add_api_route(
        "/api/credentials", limit(start_issuance), methods=["POST"], status_code=201, tags=["credentials"],
    )
    return flows


def create_app(
    services: Services | None = None,
    settings: AppSettings | None = None,
    rate_limit: bool = True,
) -> FastAPI:
    """Build the app. Tests inject ``services``; otherwise the lifespan builds them."""
    from dotenv import load_dotenv

    load_dotenv()
    if settings is None:
        settings = AppSettings.from_env()
    if not settings.session_secret:
        raise ValueError("SESSION_SECRET must be set")

    app = FastAPI(
        title="SSI Demo API",
        description="Signup, login and credential issuance flows backed by a verifiable credential agent.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    if services is not None:
        app.state.services = services

    limiter = Limiter(key_func=get_remote_address, enabled=rate_limit)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    cors_origins = [
        o.strip()
        for o in os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(",")
        if o.strip()
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie=f"{settings.app_name}_session",
    )
    app.include_router(_flow_router(limiter, settings.flow_rate_limit))
    app.include_router(router)
    app.include_router(admin.router)
    return app


# ---------------------------------------------------------------------------
# Entry point (for uvicorn programmatic launch)
# ---------------------------------------------------------------------------


def serve(host: str = "0.0.0.0", port: int = 8000, reload: bool = False) -> None:
    """Launch the FastAPI server via uvicorn."""
    import uvicorn

    uvicorn.run(
        "ssi_demo.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    serve()
