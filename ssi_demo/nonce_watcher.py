"""Watch the agent for inbound requests tagged with a QR code nonce.

A browser shows a QR code carrying a random nonce. The holder's mobile wallet
scans it and sends our agent a connection offer or a proof response with the
nonce in its metadata. The watcher polls the agent's inbound lists until a
record with that nonce shows up.

Usage::

    watcher = InboundNonceWatcher(
        agent, RequestType.CONNECTION | RequestType.VERIFICATION, nonce,
    )
    request = await watcher.start()
"""

from __future__ import annotations

import asyncio
import logging
from enum import IntFlag
from typing import Any

logger = logging.getLogger("ssi_demo.nonce_watcher")


class RequestType(IntFlag):
    CONNECTION = 1
    CREDENTIAL = 2
    VERIFICATION = 4


# State that makes a matched record actionable, per request type.
_ACTIONABLE_STATES: dict[RequestType, str] = {
    RequestType.CONNECTION: "inbound_offer",
    RequestType.VERIFICATION: "inbound_verification_request",
}


class NonceWatchError(Exception):
    """The watched request never arrived or arrived in an unusable state."""


class InboundNonceWatcher:
    """Polls for one inbound request whose metadata nonce matches ``nonce``."""

    def __init__(
        self,
        agent: Any,
        request_type: RequestType,
        nonce: str,
        retries: int = 30,
        interval_ms: int = 3000,
    ) -> None:
        if not nonce or not isinstance(nonce, str):
            raise ValueError("Invalid nonce for InboundNonceWatcher")
        if retries < 1:
            raise ValueError("InboundNonceWatcher retries must be >= 1")
        if interval_ms < 0:
            raise ValueError("InboundNonceWatcher interval must be >= 0")
        if not request_type & (RequestType.CONNECTION | RequestType.VERIFICATION):
            raise ValueError(f"InboundNonceWatcher cannot watch request type {request_type!r}")
        self.agent = agent
        self.request_type = request_type
        self.nonce = nonce
        self.retries = retries
        self.interval_ms = interval_ms
        self._stopped = False

    async def _poll_once(self) -> tuple[RequestType, dict] | None:
        if self.request_type & RequestType.CONNECTION:
            found = await self.agent.get_connections({"remote.properties.meta.nonce": self.nonce})
            if found:
                return RequestType.CONNECTION, found[0]
        if self.request_type & RequestType.VERIFICATION:
            found = await self.agent.get_verifications({"properties.meta.nonce": self.nonce})
            if found:
                return RequestType.VERIFICATION, found[0]
        return None

    async def start(self) -> dict:
        """Resolve with the first matching request in an actionable state."""
        self._stopped = False
        for attempt in range(1, self.retries + 1):
            if self._stopped:
                raise NonceWatchError(f"Watch for nonce {self.nonce} was stopped")
            logger.debug(
                "Checking for requests of type %d with nonce %s. Attempt %d/%d",
                int(self.request_type), self.nonce, attempt, self.retries,
            )
            match = await self._poll_once()
            if match is not None:
                kind, record = match
                state = record.get("state")
                if not state:
                    raise NonceWatchError(f"{kind.name} with nonce {self.nonce}: state could not be determined")
                if state != _ACTIONABLE_STATES[kind]:
                    raise NonceWatchError(
                        f"{kind.name} with nonce {self.nonce} is in an unexpected state {state!r}"
                    )
                logger.info(
                    "%s %s with nonce %s arrived from agent %s",
                    kind.name, record.get("id"), self.nonce, remote_did(record),
                )
                return record
            if attempt < self.retries:
                await asyncio.sleep(self.interval_ms / 1000)

        logger.error("Gave up waiting for nonce %s after %d attempts", self.nonce, self.retries)
        raise NonceWatchError(f"Request with nonce {self.nonce} took too long to arrive")

    def stop(self) -> None:
        self._stopped = True


def remote_did(record: dict) -> str | None:
    """Pairwise DID of the remote party for a connection or verification record."""
    remote = record.get("remote") or (record.get("connection") or {}).get("remote") or {}
    return (remote.get("pairwise") or {}).get("did")
