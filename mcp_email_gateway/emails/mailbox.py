import asyncio
import re
from collections.abc import AsyncGenerator, Awaitable, Iterable
from datetime import datetime

import aioimaplib

from mcp_email_gateway.config import EmailServer
from mcp_email_gateway.emails.decoder import decode_message
from mcp_email_gateway.emails.models import Email, RawMessage, SearchCriteria
from mcp_email_gateway.errors import (
    AuthError,
    EmailError,
    MailboxConnectionError,
    NotFoundError,
    ProtocolError,
    ToolValidationError,
)
from mcp_email_gateway.log import logger

FETCH_ITEMS = "(UID FLAGS RFC822.SIZE BODY.PEEK[])"

_FETCH_START = re.compile(rb"^(\d+) FETCH \(")
_FETCH_UID = re.compile(rb"UID (\d+)")
_FETCH_SIZE = re.compile(rb"RFC822\.SIZE (\d+)")
_FETCH_FLAGS = re.compile(rb"FLAGS \(([^)]*)\)")
_SELECT_EXISTS = re.compile(rb"^(\d+) EXISTS")
_LIST_LINE = re.compile(r'^\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.+)$')


def _quote(value: str) -> str:
    """Quote a mailbox name or search string for IMAP.

    Some IMAP servers (notably Proton Mail Bridge) require mailbox names
    to be quoted, and search strings containing spaces must be. Per RFC 3501
    Section 9 (Formal Syntax), backslashes and double quotes inside a quoted
    string are escaped with a preceding backslash.
    """
    escaped = value.replace("\\", "\\\\").replace('"', r"\"")
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1].replace(r"\"", '"').replace("\\\\", "\\")
    return value


async def _send_imap_id(imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL) -> None:
    """Send IMAP ID command with fallback for strict servers like 163.com.

    aioimaplib's id() method sends ID command with spaces between parentheses
    and content (e.g., 'ID ( "name" "value" )'), which some strict IMAP servers
    like 163.com reject with 'BAD Parse command error'. Those servers get a raw
    command with the compact format instead.
    """
    try:
        response = await imap.id(name="mcp-email-gateway", version="0.1.0")
        if response.result != "OK":
            await imap.protocol.execute(
                aioimaplib.Command(
                    "ID",
                    imap.protocol.new_tag(),
                    '("name" "mcp-email-gateway" "version" "0.1.0")',
                )
            )
    except Exception as e:
        logger.warning(f"IMAP ID command failed: {e!s}")


def _close_transport(imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL) -> None:
    """Close the socket of a client that can no longer be used; no LOGOUT is attempted."""
    try:
        transport = imap.protocol.transport
        if transport is not None:
            transport.close()
    except Exception as e:
        logger.info(f"Error closing IMAP connection: {e}")


def _has_capability(imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL, capability: str) -> bool:
    try:
        return capability in imap.protocol.capabilities
    except Exception:
        return False


def _describe(response: aioimaplib.Response) -> str:
    text = " ".join(
        bytes(line).decode("utf-8", errors="replace").strip() for line in response.lines if isinstance(line, bytes)
    )
    return f"{response.result} {text}".strip()


def _check(response: aioimaplib.Response, command: str) -> None:
    if response.result != "OK":
        raise ProtocolError(command, _describe(response))


def _imap_date(value: datetime) -> str:
    return value.strftime("%d-%b-%Y").upper()


def _message_set(ids: Iterable[int]) -> str:
    return ",".join(str(i) for i in ids)


def _validate_ids(ids: list[int]) -> None:
    if not ids:
        raise ToolValidationError("At least one email id is required")
    invalid = [i for i in ids if not isinstance(i, int) or i < 1]
    if invalid:
        msg = f"Email ids must be positive sequence numbers, got {invalid}"
        raise ToolValidationError(msg)


def build_search_criteria(criteria: SearchCriteria) -> list[str]:
    """Translate SearchCriteria into IMAP SEARCH keys."""
    search_criteria = []
    if criteria.from_address:
        search_criteria.extend(["FROM", _quote(criteria.from_address)])
    if criteria.to_address:
        search_criteria.extend(["TO", _quote(criteria.to_address)])
    if criteria.subject:
        search_criteria.extend(["SUBJECT", _quote(criteria.subject)])
    if criteria.since:
        search_criteria.extend(["SINCE", _imap_date(criteria.since)])
    if criteria.before:
        search_criteria.extend(["BEFORE", _imap_date(criteria.before)])
    if criteria.unseen:
        search_criteria.append("UNSEEN")
    if criteria.seen:
        search_criteria.append("SEEN")

    if not search_criteria:
        search_criteria = ["ALL"]

    return search_criteria


def _parse_search_ids(response: aioimaplib.Response) -> list[int]:
    if not response.lines:
        return []
    first = response.lines[0]
    if not isinstance(first, bytes):
        return []
    return sorted(int(token) for token in first.split() if token.isdigit())


def _parse_list_line(line: bytes | str) -> str | None:
    """Extract the mailbox name from one LIST response line.

    IMAP LIST response format: (flags) "delimiter" name
    Example: (\\HasNoChildren \\Sent) "/" "Sent"
    """
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else str(line)
    match = _LIST_LINE.match(text.strip())
    if not match:
        return None
    return _unquote(match.group("name").strip())


def _apply_fetch_metadata(record: RawMessage, line: bytes) -> None:
    # Servers differ on where UID/FLAGS/RFC822.SIZE go: some put them before
    # the literal, others (like Proton Bridge) after it.
    if uid := _FETCH_UID.search(line):
        record.uid = int(uid.group(1))
    if size := _FETCH_SIZE.search(line):
        record.size = int(size.group(1))
    if flags := _FETCH_FLAGS.search(line):
        record.flags = [flag.decode("utf-8", errors="replace") for flag in flags.group(1).split()]


class MailboxSession:
    """One authenticated IMAP session shared by every mailbox operation.

    IMAP is stateful (SELECT changes what every later command refers to), so
    all commands run under a single lock and every folder-scoped operation
    re-selects its folder before doing anything else.
    """

    def __init__(self, email_server: EmailServer):
        self.email_server = email_server
        self.imap_class = aioimaplib.IMAP4_SSL if self.email_server.use_ssl else aioimaplib.IMAP4
        self._imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL | None = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._imap is not None

    async def connect(self) -> None:
        async with self._lock:
            if self._imap is None:
                await self._connect()

    async def close(self) -> None:
        async with self._lock:
            await self._close()

    async def reconnect(self) -> None:
        """Drop the current session and authenticate again."""
        async with self._lock:
            await self._close()
            await self._connect()

    async def _connect(self) -> None:
        server = self.email_server
        imap = None
        try:
            imap = self.imap_class(server.host, server.port)
            # Wait for the connection to be established
            await imap._client_task
            await imap.wait_hello_from_server()
        except (OSError, asyncio.TimeoutError, aioimaplib.CommandTimeout, aioimaplib.Error) as e:
            if imap is not None:
                _close_transport(imap)
            msg = f"Failed to connect to IMAP server {server.host}:{server.port}: {e!s}"
            raise MailboxConnectionError(msg) from e

        try:
            response = await self._execute("LOGIN", imap.login(server.user_name, server.password))
        except EmailError:
            _close_transport(imap)
            raise
        if response.result != "OK":
            await self._logout(imap)
            msg = f"Login rejected for {server.user_name}: {_describe(response)}"
            raise AuthError(msg)

        await _send_imap_id(imap)
        self._imap = imap
        logger.info(f"IMAP session established with {server.host}:{server.port} as {server.user_name}")

    async def _close(self) -> None:
        imap, self._imap = self._imap, None
        if imap is not None:
            await self._logout(imap)

    @staticmethod
    async def _logout(imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL) -> None:
        try:
            await imap.logout()
        except Exception as e:
            logger.info(f"Error during logout: {e}")

    async def _session(self) -> aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL:
        if self._imap is None:
            await self._connect()
        return self._imap

    async def _execute(self, command: str, pending: Awaitable[aioimaplib.Response]) -> aioimaplib.Response:
        try:
            return await pending
        except (aioimaplib.Abort, aioimaplib.CommandTimeout, OSError, asyncio.TimeoutError) as e:
            # The session is unusable; the next operation opens a fresh one.
            imap, self._imap = self._imap, None
            if imap is not None:
                _close_transport(imap)
            msg = f"{command} failed, IMAP session lost: {e!s}"
            raise MailboxConnectionError(msg) from e
        except aioimaplib.Error as e:
            raise ProtocolError(command, e) from e

    async def _select(self, imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL, folder: str) -> int:
        """SELECT a folder and return its message count."""
        response = await self._execute("SELECT", imap.select(_quote(folder)))
        _check(response, f"SELECT {folder}")
        for line in response.lines:
            if isinstance(line, bytes) and (exists := _SELECT_EXISTS.match(line.strip())):
                return int(exists.group(1))
        return 0

    async def _iter_mailboxes(self, imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL) -> AsyncGenerator[str, None]:
        response = await self._execute("LIST", imap.list('""', "*"))
        for line in response.lines:
            name = _parse_list_line(line)
            if name is not None:
                yield name
        # A failed LIST can still carry partial lines; only the final status is authoritative.
        _check(response, "LIST")

    async def _stream_fetch(
        self,
        imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL,
        message_set: str,
    ) -> AsyncGenerator[RawMessage, None]:
        """Yield one RawMessage per FETCH response, then verify the completion status.

        Response layout (per message): b'12 FETCH (UID 44 FLAGS (\\Seen) RFC822.SIZE 9 BODY[] {9}',
        bytearray(<literal>), b')' - metadata may also trail the literal.
        """
        response = await self._execute("FETCH", imap.fetch(message_set, FETCH_ITEMS))
        pending: RawMessage | None = None
        for line in response.lines:
            if isinstance(line, bytearray):
                if pending is not None:
                    pending.body = bytes(line)
                continue
            if start := _FETCH_START.match(line):
                if pending is not None:
                    yield pending
                pending = RawMessage(seq=int(start.group(1)))
            if pending is not None:
                _apply_fetch_metadata(pending, line)
        if pending is not None:
            yield pending
        _check(response, "FETCH")

    async def _fetch(
        self,
        imap: aioimaplib.IMAP4 | aioimaplib.IMAP4_SSL,
        ids: list[int],
        include_attachments: bool,
    ) -> list[Email]:
        wanted = set(ids)
        raw_messages: dict[int, RawMessage] = {}
        async for raw in self._stream_fetch(imap, _message_set(ids)):
            # Unsolicited FETCH responses (flag updates for other messages) are ignored.
            if raw.seq not in wanted:
                continue
            if raw.body or raw.seq not in raw_messages:
                raw_messages[raw.seq] = raw
        return [decode_message(raw, include_attachments) for raw in raw_messages.values()]

    async def list_mailboxes(self) -> list[str]:
        async with self._lock:
            imap = await self._session()
            mailboxes = [name async for name in self._iter_mailboxes(imap)]
        logger.info(f"Found {len(mailboxes)} mailboxes")
        return mailboxes

    async def search(self, criteria: SearchCriteria) -> list[Email]:
        """Search a folder and return at most ``criteria.effective_limit`` emails, newest first."""
        if criteria.seen and criteria.unseen:
            logger.warning("Both seen and unseen were requested; IMAP ANDs them so nothing can match")
        search_criteria = build_search_criteria(criteria)

        async with self._lock:
            imap = await self._session()
            await self._select(imap, criteria.folder)
            logger.info(f"Search {criteria.folder}: criteria {search_criteria}")
            response = await self._execute("SEARCH", imap.search(*search_criteria))
            _check(response, "SEARCH")

            ids = _parse_search_ids(response)
            logger.info(f"Found {len(ids)} email IDs")
            if not ids:
                return []

            # Highest sequence numbers are the most recent messages.
            ids = ids[-criteria.effective_limit :]
            emails = await self._fetch(imap, ids, include_attachments=False)

        return sorted(emails, key=lambda e: e.id, reverse=True)

    async def get(self, email_id: int, folder: str = "INBOX", include_attachments: bool = False) -> Email:
        _validate_ids([email_id])
        async with self._lock:
            imap = await self._session()
            exists = await self._select(imap, folder)
            if email_id > exists:
                emails = []
            else:
                emails = await self._fetch(imap, [email_id], include_attachments)

        if not emails:
            msg = f"Email {email_id} not found in {folder}"
            raise NotFoundError(msg)
        return emails[0]

    async def _store_flags(self, ids: list[int], folder: str, operation: str, flags: str) -> None:
        _validate_ids(ids)
        async with self._lock:
            imap = await self._session()
            await self._select(imap, folder)
            # One STORE for the whole id set, not one per message.
            response = await self._execute("STORE", imap.store(_message_set(ids), operation, flags))
            _check(response, f"STORE {operation} {flags}")
        logger.info(f"{operation} {flags} on {len(ids)} email(s) in {folder}")

    async def mark_as_read(self, ids: list[int], folder: str = "INBOX") -> None:
        await self._store_flags(ids, folder, "+FLAGS", r"(\Seen)")

    async def mark_as_unread(self, ids: list[int], folder: str = "INBOX") -> None:
        await self._store_flags(ids, folder, "-FLAGS", r"(\Seen)")

    async def move(self, email_id: int, from_folder: str, to_folder: str) -> None:
        """Move one email, using MOVE (RFC 6851) when advertised and COPY + DELETE otherwise."""
        _validate_ids([email_id])
        message_set = _message_set([email_id])
        async with self._lock:
            imap = await self._session()
            await self._select(imap, from_folder)

            if _has_capability(imap, "MOVE"):
                response = await self._execute("MOVE", imap.move(message_set, _quote(to_folder)))
                _check(response, f"MOVE {to_folder}")
            else:
                response = await self._execute("COPY", imap.copy(message_set, _quote(to_folder)))
                _check(response, f"COPY {to_folder}")
                response = await self._execute("STORE", imap.store(message_set, "+FLAGS", r"(\Deleted)"))
                _check(response, r"STORE +FLAGS (\Deleted)")
                response = await self._execute("EXPUNGE", imap.expunge())
                _check(response, "EXPUNGE")
        logger.info(f"Moved email {email_id} from {from_folder} to {to_folder}")

    async def delete(self, email_id: int, folder: str = "INBOX", permanent: bool = False) -> None:
        """Flag an email as deleted, expunging the folder when ``permanent``.

        EXPUNGE is folder-wide: it also purges every other message in the
        folder that is already flagged \\Deleted.
        """
        _validate_ids([email_id])
        async with self._lock:
            imap = await self._session()
            await self._select(imap, folder)
            response = await self._execute("STORE", imap.store(_message_set([email_id]), "+FLAGS", r"(\Deleted)"))
            _check(response, r"STORE +FLAGS (\Deleted)")
            if permanent:
                response = await self._execute("EXPUNGE", imap.expunge())
                _check(response, "EXPUNGE")
        logger.info(f"Deleted email {email_id} from {folder} (permanent={permanent})")
