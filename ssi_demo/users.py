"""CouchDB-backed user records.

Each user is one document keyed by username::

    {"_id": "alice@example.com", "email": ..., "password": <bcrypt hash>,
     "type": "user", "personal_info": {...}, "opts": {...}}

``password`` never leaves this module; every read strips it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from urllib.parse import quote

import bcrypt
import httpx

from ssi_demo.errors import ErrorCode, FlowError

logger = logging.getLogger("ssi_demo.users")

ACCOUNT_INDEX = "personal-info-account-number"


class UserStoreError(Exception):
    """The users database could not be reached or rejected a request."""


class UserNotFoundError(FlowError, KeyError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.USER_NOT_FOUND, message)


class UserExistsError(FlowError):
    def __init__(self, username: str) -> None:
        super().__init__(ErrorCode.USER_ALREADY_EXISTS, f"User {username} already exists")


def _strip(doc: dict) -> dict:
    doc = dict(doc)
    doc.pop("password", None)
    return doc


class UserStore:
    def __init__(self, db_url: str, db_name: str = "users", timeout: float = 30.0) -> None:
        if not db_url:
            raise ValueError("A database URL is required for the user store")
        self.db_name = db_name
        self._client = httpx.AsyncClient(base_url=db_url.rstrip("/"), timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    def _doc_path(self, username: str) -> str:
        return f"/{self.db_name}/{quote(username, safe='')}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise UserStoreError(f"Users database request failed: {e}") from e

    @staticmethod
    def _check(r: httpx.Response, action: str) -> None:
        if r.is_error:
            logger.error("Failed to %s: HTTP %s %s", action, r.status_code, r.text)
            raise UserStoreError(f"Failed to {action}: HTTP {r.status_code}")

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def publish_indexes(self) -> None:
        """Create the database and the account number index if missing."""
        r = await self._request("PUT", f"/{self.db_name}")
        if r.status_code != 412:
            self._check(r, f"create database {self.db_name}")
        r = await self._request("POST", f"/{self.db_name}/_index", json={
            "index": {"fields": ["personal_info.account_number"]},
            "name": ACCOUNT_INDEX,
            "type": "json",
        })
        self._check(r, "publish the account number index")
        logger.info("Published index %s on %s", ACCOUNT_INDEX, self.db_name)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def _read_raw(self, username: str) -> dict:
        if not username:
            raise ValueError("Username must be a non-empty string")
        r = await self._request("GET", self._doc_path(username))
        if r.status_code == 404:
            raise UserNotFoundError(f"User {username} could not be found in the user list")
        self._check(r, f"read user {username}")
        return r.json()

    async def read_user(self, username: str) -> dict:
        return _strip(await self._read_raw(username))

    async def read_users(self) -> list[dict]:
        r = await self._request("GET", f"/{self.db_name}/_all_docs", params={"include_docs": "true"})
        self._check(r, "read users")
        rows = r.json().get("rows", [])
        return [_strip(row["doc"]) for row in rows if (row.get("doc") or {}).get("type") == "user"]

    async def create_user(
        self,
        username: str,
        password: str | None,
        personal_info: dict | None = None,
        opts: dict | None = None,
    ) -> dict:
        if not username:
            raise ValueError("New user's username was not a non-empty string")
        # Wallet (QR) signups have no password yet.
        if not (opts or {}).get("mobile_user") and not isinstance(password, str):
            raise ValueError("New user's password must be a string")

        doc: dict[str, Any] = {"_id": username, "email": username, "type": "user"}
        if password:
            hashed = await asyncio.to_thread(bcrypt.hashpw, password.encode("utf-8"), bcrypt.gensalt(10))
            doc["password"] = hashed.decode("utf-8")
        if personal_info:
            doc["personal_info"] = personal_info
        if opts:
            doc["opts"] = opts

        r = await self._request("PUT", self._doc_path(username), json=doc)
        if r.status_code == 409:
            raise UserExistsError(username)
        self._check(r, f"create user {username}")
        logger.info("Created user %s", username)
        return _strip(doc)

    async def update_user(self, username: str, personal_info: dict | None = None, opts: dict | None = None) -> dict:
        doc = await self._read_raw(username)
        if personal_info:
            doc["personal_info"] = personal_info
        else:
            doc.pop("personal_info", None)
        if opts:
            doc["opts"] = opts
        else:
            doc.pop("opts", None)
        r = await self._request("PUT", self._doc_path(username), json=doc)
        self._check(r, f"update user {username}")
        logger.info("Updated user %s", username)
        doc["_rev"] = r.json().get("rev", doc.get("_rev"))
        return _strip(doc)

    async def delete_user(self, username: str) -> None:
        doc = await self._read_raw(username)
        r = await self._request("DELETE", self._doc_path(username), params={"rev": doc["_rev"]})
        self._check(r, f"delete user {username}")
        logger.info("Deleted user %s", username)

    async def check_password(self, username: str, password: str) -> bool:
        if not password:
            raise ValueError("Invalid password")
        doc = await self._read_raw(username)
        hashed = doc.get("password")
        if not hashed:
            return False
        return await asyncio.to_thread(bcrypt.checkpw, password.encode("utf-8"), hashed.encode("utf-8"))

    async def read_user_from_account(self, account_number: str) -> dict:
        if not account_number:
            raise ValueError("Account number must be a non-empty string")
        logger.info("Reading user from account %s", account_number)
        r = await self._request("POST", f"/{self.db_name}/_find", json={
            "selector": {"personal_info.account_number": account_number},
            "limit": 1,
        })
        self._check(r, f"look up account {account_number}")
        docs = r.json().get("docs", [])
        if not docs:
            raise UserNotFoundError(f"Account {account_number} could not be found in the user list")
        return _strip(docs[0])
