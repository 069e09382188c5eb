"""Cron entry point: run one token refresh cycle and print its summary."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from mcp_oauth.app import OAuthRuntime
from mcp_oauth.config import OAuthSettings


def setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )


async def run_once(settings: OAuthSettings, cleanup_pkce: bool) -> dict:
    runtime = OAuthRuntime(settings)
    try:
        summary = await runtime.trigger_token_refresh()
        result = summary.to_dict()
        if cleanup_pkce:
            result["pkce_removed"] = await runtime.pkce_store.cleanup_expired(
                settings.pkce_cleanup_grace
            )
        return result
    finally:
        await runtime.stop()


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="mcp-oauth-refresh",
        description="Refresh OAuth tokens that are about to expire (one cycle).",
        epilog="Configuration is read from MCP_OAUTH_* environment variables.",
    )
    parser.add_argument(
        "--database-url",
        help="Override MCP_OAUTH_DATABASE_URL",
    )
    parser.add_argument(
        "--cleanup-pkce",
        action="store_true",
        help="Also remove expired PKCE states",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    setup_logging(args.debug)

    overrides = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    settings = OAuthSettings(**overrides)

    result = asyncio.run(run_once(settings, args.cleanup_pkce))
    print(json.dumps(result))
    return 1 if result["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
