import os
import sys

from loguru import logger

# stdout carries the stdio transport, so logs must only go to stderr.
logger.remove()
logger.add(sys.stderr, level=os.getenv("MCP_EMAIL_GATEWAY_LOG_LEVEL", "INFO").upper())

__all__ = ["logger"]
