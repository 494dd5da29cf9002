"""Accept inbound connection offers so other demo apps can connect to us."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ssi_demo.agent import AgentError

logger = logging.getLogger("ssi_demo.helpers.responder")


class ConnectionResponder:
    """Background task that accepts every inbound connection offer.

    The account signup helper on the bank relies on the DMV and HR apps
    running one of these.
    """

    def __init__(self, agent: Any, interval_ms: int = 3000) -> None:
        if interval_ms < 0:
            raise ValueError("ConnectionResponder interval must be >= 0")
        self.agent = agent
        self.interval_ms = interval_ms
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def respond_once(self) -> dict | None:
        """Accept the oldest inbound offer, deleting it if the accept fails."""
        offers = await self.agent.get_connections({"state": "inbound_offer"})
        logger.debug("Connection offers: %d", len(offers))
        if not offers:
            return None
        offer = offers[0]
        remote = (offer.get("remote") or {}).get("name")
        try:
            logger.info("Accepting connection offer %s from %s", offer["id"], remote)
            return await self.agent.accept_connection(offer["id"])
        except AgentError as e:
            logger.error("Couldn't accept connection offer %s: %s", offer["id"], e)
            await self.agent.delete_connection(offer["id"])
            return None

    async def _run(self) -> None:
        while True:
            try:
                await self.respond_once()
            except AgentError as e:
                logger.error("Failed to respond to connection requests: %s", e)
            await asyncio.sleep(self.interval_ms / 1000)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="connection-responder")
        logger.info("Connection responder started (interval=%dms)", self.interval_ms)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Connection responder stopped")


async def create_invitation(agent: Any, icon: str | None = None) -> dict:
    """Create a reusable, auto-accepted invitation to this agent."""
    properties = {"icon": icon} if icon else None
    return await agent.create_invitation(True, False, -1, properties)
