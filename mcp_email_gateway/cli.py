"""Command line entry point: load settings, then serve the email tools over stdio or HTTP."""

import argparse
import sys

from pydantic import ValidationError

from mcp_email_gateway.config import get_settings
from mcp_email_gateway.log import logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mcp-email-gateway", description="MCP server for IMAP/SMTP email")
    parser.add_argument("--http", action="store_true", help="Serve streamable HTTP instead of stdio")
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind in HTTP mode (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8080, help="Port to bind in HTTP mode (default: 8080)")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    logger.info(f"IMAP: {settings.incoming.masked()}")
    logger.info(f"SMTP: {settings.outgoing.masked()}")

    from mcp_email_gateway.app import mcp

    if args.http:
        mcp.settings.host = args.host
        mcp.settings.port = args.port
        logger.info(f"Serving streamable HTTP on http://{args.host}:{args.port}/mcp (health: /health)")
        mcp.run(transport="streamable-http")
    else:
        mcp.run(transport="stdio")
    return 0


if __name__ == "__main__":
    sys.exit(main())
