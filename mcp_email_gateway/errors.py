class EmailError(Exception):
    """Base class for every failure surfaced by the mailbox driver or composer."""


class MailboxConnectionError(EmailError, ConnectionError):
    """The IMAP session is unusable (cannot connect, aborted, timed out)."""


class AuthError(EmailError):
    """The server rejected the configured credentials."""


class ProtocolError(EmailError):
    """An IMAP command completed with a non-OK status or raised."""

    def __init__(self, command: str, underlying: object):
        self.command = command
        self.underlying = underlying
        super().__init__(f"{command} failed: {underlying}")


class NotFoundError(EmailError, LookupError):
    """The requested message id is absent from the selected mailbox."""


class DeliveryError(EmailError):
    """The outbound relay refused the connection, login or message."""


class ToolValidationError(EmailError, ValueError):
    """A tool argument is missing or malformed."""
