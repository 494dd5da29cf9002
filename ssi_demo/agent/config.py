"""Configuration for the cloud agent HTTP client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class AgentSettings:
    """Immutable agent account settings loaded from environment variables."""

    account_url: str = "http://localhost:8000"
    agent_name: str = ""
    agent_password: str = field(default="", repr=False)
    friendly_name: str = ""
    timeout: int = 120

    @classmethod
    def from_env(cls) -> AgentSettings:
        account_url = os.getenv("ACCOUNT_URL", "http://localhost:8000").rstrip("/")
        agent_name = os.getenv("AGENT_NAME", "")
        agent_password = os.getenv("AGENT_PASSWORD", "")
        friendly_name = os.getenv("FRIENDLY_NAME", "") or agent_name
        timeout = int(os.getenv("AGENT_TIMEOUT", "120"))
        return cls(
            account_url=account_url,
            agent_name=agent_name,
            agent_password=agent_password,
            friendly_name=friendly_name,
            timeout=timeout,
        )

    @property
    def base_url(self) -> str:
        return f"{self.account_url}/api/v1"

    @property
    def auth(self) -> tuple[str, str] | None:
        if not self.agent_name:
            return None
        return (self.agent_name, self.agent_password)

    @property
    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}
