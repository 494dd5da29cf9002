"""Cloud agent HTTP client."""

from ssi_demo.agent.agent_client import AgentClient, AgentError
from ssi_demo.agent.config import AgentSettings

__all__ = ["AgentClient", "AgentError", "AgentSettings"]
