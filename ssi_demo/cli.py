"""Command line entry point for the demo apps.

Usage:
    ssi-demo serve --port 3000
    ssi-demo invitation
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from argparse import ArgumentParser

from dotenv import load_dotenv

from ssi_demo.agent import AgentClient, AgentError, AgentSettings
from ssi_demo.config import configure_logging
from ssi_demo.helpers import create_invitation


async def _print_invitation() -> int:
    """Create a multi-use invitation to the configured agent and print its URL."""
    client = AgentClient(AgentSettings.from_env())
    try:
        invitation = await create_invitation(client)
    except AgentError as e:
        print(f"Failed to create an invitation: {e}", file=sys.stderr)
        return 1
    finally:
        await client.close()
    print(invitation.get("url", invitation))
    return 0


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main() -> None:
    load_dotenv()
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))

    parser = ArgumentParser(
        prog="ssi-demo",
        description="Verifiable credential signup, login and issuance demo app",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve_p = sub.add_parser("serve", help="Run the HTTP API")
    serve_p.add_argument("--host", default="0.0.0.0")
    serve_p.add_argument("--port", type=int, default=int(os.getenv("PORT", "3000")))
    serve_p.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")

    sub.add_parser("invitation", help="Print a reusable invitation URL for the configured agent")

    args = parser.parse_args()

    if args.command == "serve":
        from ssi_demo.api import serve

        serve(args.host, args.port, args.reload)
    elif args.command == "invitation":
        logging.getLogger("httpx").setLevel(logging.WARNING)
        sys.exit(asyncio.run(_print_invitation()))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
