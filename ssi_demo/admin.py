"""User administration and issuer setup routes.

  Users:   GET /users                  (admin)
           GET /users/{user_id}        (admin or that user)
           POST /users/{user_id}       create an account with personal info
           PUT /users/{user_id}        (admin)
           DELETE /users/{user_id}     (admin or that user)
  Issuer:  GET/POST /creddefs, GET/POST /schemas, GET /proof_schemas,
           GET /schema_templates/default, GET /agentinfo

Admin routes take HTTP Basic credentials matching ADMIN_API_USERNAME and
ADMIN_API_PASSWORD. When those are not configured every admin request is
refused.
"""

import logging
import secrets

from fastapi import APIRouter, Depends, Request, Security
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel

from ssi_demo.agent import AgentError
from ssi_demo.branding import NullImageProvider
from ssi_demo.helpers import create_invitation
from ssi_demo.helpers.base import check_template_path, load_template
from ssi_demo.schemas import connection_target, newest_first
from ssi_demo.users import UserExistsError, UserNotFoundError, UserStoreError

logger = logging.getLogger("ssi_demo.admin")

NOT_AUTHORIZED = "NOT_AUTHORIZED"
BAD_REQUEST = "BAD_REQUEST"
USER_PERSONAL_INFO_NOT_FOUND = "USER_PERSONAL_INFO_NOT_FOUND"
UNKNOWN_USER_API_ERROR = "UNKNOWN_USER_API_ERROR"
CRED_DEF_INVALID_SCHEMA_ID = "CRED_DEF_INVALID_SCHEMA_ID"
UNKNOWN_CRED_DEF_API_ERROR = "UNKNOWN_CRED_DEF_API_ERROR"
SCHEMA_INVALID_NAME = "SCHEMA_INVALID_NAME"
SCHEMA_INVALID_VERSION = "SCHEMA_INVALID_VERSION"
SCHEMA_INVALID_ATTRIBUTES = "SCHEMA_INVALID_ATTRIBUTES"
UNKNOWN_SCHEMA_API_ERROR = "UNKNOWN_SCHEMA_API_ERROR"
UNKNOWN_AGENT_API_ERROR = "UNKNOWN_AGENT_API_ERROR"

router = APIRouter()

_basic = HTTPBasic(auto_error=False)


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


def _is_admin(
    request: Request,
    credentials: HTTPBasicCredentials | None = Security(_basic),
) -> bool:
    settings = request.app.state.settings
    if not settings.admin_protected or credentials is None:
        return False
    user_ok = secrets.compare_digest(credentials.username.encode(), settings.admin_username.encode())
    password_ok = secrets.compare_digest(credentials.password.encode(), settings.admin_password.encode())
    return user_ok and password_ok


def _error(status_code: int, code: str, reason: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": code, "reason": reason})


def _admin_required() -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"error": NOT_AUTHORIZED, "reason": "Admin credentials are required for this API endpoint"},
        headers={"WWW-Authenticate": "Basic"},
    )


def _is_self(request: Request, user_id: str) -> bool:
    return request.session.get("user_id") == user_id


def _services(request: Request):
    return request.app.state.services


def _user_response(doc: dict) -> dict:
    doc = dict(doc)
    doc.pop("_rev", None)
    return {doc.get("email", doc.get("_id")): doc}


def _user_error(e: Exception) -> JSONResponse:
    if isinstance(e, UserNotFoundError):
        return _error(404, e.code.value, e.message)
    if isinstance(e, UserExistsError):
        return _error(409, e.code.value, e.message)
    if isinstance(e, ValueError):
        return _error(400, BAD_REQUEST, str(e))
    logger.error("User API request failed: %s", e)
    return _error(500, UNKNOWN_USER_API_ERROR, str(e))


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class UserRequest(BaseModel):
    personal_info: dict | None = None
    opts: dict | None = None
    password: str | None = None


class CredDefRequest(BaseModel):
    schema_id: str | None = None


class SchemaRequest(BaseModel):
    name: str | None = None
    version: str | None = None
    attributes: list | None = None


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users", tags=["users"])
async def list_users(request: Request, is_admin: bool = Depends(_is_admin)):
    if not is_admin:
        return _admin_required()
    try:
        users = await _services(request).users.read_users()
    except UserStoreError as e:
        return _user_error(e)
    return {"users": users}


@router.get("/users/{user_id}", tags=["users"])
async def get_user(request: Request, user_id: str, is_admin: bool = Depends(_is_admin)):
    if not is_admin and not _is_self(request, user_id):
        return _error(401, NOT_AUTHORIZED, "You cannot request information on other users")
    try:
        doc = await _services(request).users.read_user(user_id)
    except (UserNotFoundError, UserStoreError, ValueError) as e:
        return _user_error(e)
    return _user_response(doc)


@router.post("/users/{user_id}", status_code=201, tags=["users"])
async def create_user(request: Request, user_id: str, body: UserRequest):
    if body.personal_info is None:
        return _error(400, USER_PERSONAL_INFO_NOT_FOUND, "key 'personal_info' was not found in the user creation request")
    if body.opts is None:
        return _error(400, BAD_REQUEST, "key 'opts' was not found in the user creation request")
    if body.password is None:
        return _error(400, BAD_REQUEST, "key 'password' was not found in the user creation request")
    try:
        doc = await _services(request).users.create_user(user_id, body.password, body.personal_info, body.opts)
    except (UserExistsError, UserStoreError, ValueError) as e:
        return _user_error(e)
    logger.info("Created user %s through the users API", user_id)
    return _user_response(doc)


@router.put("/users/{user_id}", tags=["users"])
async def update_user(request: Request, user_id: str, body: UserRequest, is_admin: bool = Depends(_is_admin)):
    if not is_admin:
        return _admin_required()
    if body.personal_info is None:
        return _error(400, USER_PERSONAL_INFO_NOT_FOUND, "Update requests must supply updated personal information")
    if body.opts is None:
        return _error(400, BAD_REQUEST, "key 'opts' was not found in the user update request")
    try:
        doc = await _services(request).users.update_user(user_id, body.personal_info, body.opts)
    except (UserNotFoundError, UserStoreError, ValueError) as e:
        return _user_error(e)
    return _user_response(doc)


@router.delete("/users/{user_id}", tags=["users"])
async def delete_user(request: Request, user_id: str, is_admin: bool = Depends(_is_admin)):
    if not is_admin and not _is_self(request, user_id):
        return _error(401, NOT_AUTHORIZED, "You cannot delete other users")
    services = _services(request)
    try:
        doc = await services.users.read_user(user_id)
    except (UserNotFoundError, UserStoreError, ValueError) as e:
        return _user_error(e)

    try:
        agent_name = (doc.get("opts") or {}).get("agent_name")
        if agent_name:
            target = connection_target(agent_name)
            search = {"remote.url": target["url"]} if "url" in target else {"remote.name": target["name"]}
            for connection in await services.agent.get_connections(search):
                await services.agent.delete_connection(connection["id"])
        await services.users.delete_user(user_id)
    except (UserNotFoundError, UserStoreError) as e:
        return _user_error(e)
    except AgentError as e:
        logger.error("Failed to delete connections for user %s: %s", user_id, e)
        return _error(500, UNKNOWN_USER_API_ERROR, str(e))

    if _is_self(request, user_id):
        request.session.clear()
    return {"message": f"Deleted user {user_id}"}


# ---------------------------------------------------------------------------
# Credential definitions
# ---------------------------------------------------------------------------


@router.post("/creddefs", status_code=201, tags=["issuer"])
async def publish_cred_def(request: Request, body: CredDefRequest, is_admin: bool = Depends(_is_admin)):
    if not is_admin:
        return _admin_required()
    if not body.schema_id:
        return _error(400, CRED_DEF_INVALID_SCHEMA_ID, "schema_id was not a non-empty string")
    try:
        cred_def = await _services(request).agent.create_credential_definition(body.schema_id)
    except AgentError as e:
        return _error(500, UNKNOWN_CRED_DEF_API_ERROR, str(e))
    logger.info("Published credential definition %s", cred_def.get("id"))
    return {"message": f"Created credential definition {cred_def.get('id')}", "cred_def": cred_def}


@router.get("/creddefs", tags=["issuer"])
async def list_cred_defs(request: Request):
    try:
        cred_defs = await _services(request).agent.get_credential_definitions()
    except AgentError as e:
        return _error(500, UNKNOWN_CRED_DEF_API_ERROR, str(e))
    return {"message": "Got the full list of credential definitions", "cred_defs": cred_defs}


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


@router.get("/schema_templates/default", tags=["issuer"])
async def default_schema_template(request: Request):
    try:
        template = await load_template(check_template_path(request.app.state.settings.schema_template_path))
    except ValueError as e:
        return _error(500, UNKNOWN_SCHEMA_API_ERROR, str(e))
    return {"message": f"Got template schema {template['name']}", "schema": template}


@router.post("/schemas", status_code=201, tags=["issuer"])
async def publish_schema(request: Request, body: SchemaRequest, is_admin: bool = Depends(_is_admin)):
    if not is_admin:
        return _admin_required()
    if not body.name:
        return _error(400, SCHEMA_INVALID_NAME, "Schema name was not a non-empty string")
    if not body.version:
        return _error(400, SCHEMA_INVALID_VERSION, "Schema version was not a non-empty string")
    if not 2 <= len(body.version.split(".")) <= 3:
        return _error(400, SCHEMA_INVALID_VERSION, "Schema version was not a semver ('1.0' or '1.0.0', for example)")
    if not body.attributes or not all(isinstance(a, str) and a for a in body.attributes):
        return _error(
            400, SCHEMA_INVALID_ATTRIBUTES,
            "Schema attribute list was not an array of strings representing attribute names",
        )
    try:
        schema = await _services(request).agent.create_credential_schema(body.name, body.version, body.attributes)
    except AgentError as e:
        return _error(500, UNKNOWN_SCHEMA_API_ERROR, str(e))
    logger.info("Published schema %s", schema.get("id"))
    return {"message": f"Created schema {schema.get('id')}", "schema": schema}


@router.get("/schemas", tags=["issuer"])
async def list_schemas(request: Request, sort: bool = False):
    try:
        schemas = await _services(request).agent.get_credential_schemas()
    except AgentError as e:
        return _error(500, UNKNOWN_SCHEMA_API_ERROR, str(e))
    return {"message": "Got the full list of schemas", "schemas": newest_first(schemas) if sort else schemas}


@router.get("/proof_schemas", tags=["issuer"])
async def list_proof_schemas(request: Request, name: str | None = None, sort: bool = False):
    try:
        schemas = await _services(request).agent.get_proof_schemas({"name": name} if name else None)
    except AgentError as e:
        return _error(500, UNKNOWN_SCHEMA_API_ERROR, str(e))
    return {"message": "Got the full list of proof schemas", "schemas": newest_first(schemas) if sort else schemas}


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


@router.get("/agentinfo", tags=["issuer"])
async def agent_info(request: Request):
    """The agent's identity and a reusable invitation wallets can accept."""
    services = _services(request)
    agent = services.agent
    try:
        icon = await (services.icon_provider or NullImageProvider()).get_image()
        invitation = None
        for candidate in await agent.get_invitations({"max_acceptances": -1}):
            if candidate.get("manual_accept") is False and (not icon or (candidate.get("properties") or {}).get("icon")):
                invitation = candidate
                break
        if invitation is None:
            invitation = await create_invitation(agent, icon)
            logger.info("Created a reusable invitation %s", invitation.get("id"))
    except AgentError as e:
        logger.error("Failed to look up agent info: %s", e)
        return _error(500, UNKNOWN_AGENT_API_ERROR, str(e))
    return {
        "agent": {
            "url": agent.account_url,
            "name": agent.name,
            "friendly_name": agent.friendly_name,
            "invitation_url": invitation.get("url"),
        }
    }
