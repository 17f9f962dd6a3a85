from mcp_email_gateway.config import get_settings
from mcp_email_gateway.emails import EmailHandler
from mcp_email_gateway.emails.classic import ClassicEmailHandler

_handler: EmailHandler | None = None


def dispatch_handler() -> EmailHandler:
    """Return the handler for the configured account, creating it on first use."""
    global _handler
    if _handler is None:
        _handler = ClassicEmailHandler(get_settings())
    return _handler


def reset_handler() -> None:
    global _handler
    _handler = None
