import asyncio
from collections import namedtuple
from dataclasses import dataclass, field
from email.message import EmailMessage

import pytest

from mcp_email_gateway.config import EmailServer, Settings
from mcp_email_gateway.emails.mailbox import MailboxSession

Response = namedtuple("Response", "result lines")


def make_message(
    subject: str = "Hello",
    sender: str = "Alice <alice@example.com>",
    to: str = "bob@example.com",
    cc: str | None = None,
    text: str | None = "Hello Bob",
    html: str | None = None,
    attachments: list[tuple[str, str, bytes]] | None = None,
    message_id: str | None = "<msg-1@example.com>",
    date: str | None = "Mon, 02 Jan 2006 15:04:05 +0000",
) -> bytes:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    if cc:
        msg["Cc"] = cc
    if message_id:
        msg["Message-ID"] = message_id
    if date:
        msg["Date"] = date

    if text is not None:
        msg.set_content(text)
    if html is not None:
        if text is not None:
            msg.add_alternative(html, subtype="html")
        else:
            msg.set_content(html, subtype="html")
    for filename, content_type, data in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=filename)
    return msg.as_bytes()


@dataclass
class FakeMessage:
    uid: int
    body: bytes
    flags: set[str] = field(default_factory=set)


class FakeTransport:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class FakeProtocol:
    def __init__(self, capabilities: set[str]):
        self.capabilities = capabilities
        self.transport = FakeTransport()


class FakeIMAP:
    """In-memory IMAP server speaking the subset of the aioimaplib client API used by MailboxSession.

    Folders hold messages in sequence-number order; EXPUNGE renumbers them.
    Every command is recorded in ``commands`` as ``(name, args)``.
    """

    def __init__(self, capabilities: set[str] | None = None, password: str = "secret"):
        self.folders: dict[str, list[FakeMessage]] = {"INBOX": [], "Archive": [], "Sent Items": []}
        self.protocol = FakeProtocol(capabilities if capabilities is not None else {"IMAP4rev1", "MOVE"})
        self.password = password
        self.selected: str | None = None
        self.commands: list[tuple[str, tuple]] = []
        self.results: dict[str, str] = {}  # command name -> forced completion result
        self.errors: dict[str, Exception] = {}  # command name -> exception to raise
        self.uid_after_literal = False
        self._next_uid = 100

    # helpers used by tests

    def add(self, folder: str, body: bytes, flags: set[str] | None = None) -> int:
        self._next_uid += 1
        self.folders.setdefault(folder, []).append(FakeMessage(self._next_uid, body, set(flags or ())))
        return len(self.folders[folder])

    def names(self, *names: str) -> list[str]:
        return [name for name, _ in self.commands if not names or name in names]

    async def _record(self, name: str, *args) -> Response | None:
        self.commands.append((name, args))
        # Yield so concurrent callers get a chance to interleave.
        await asyncio.sleep(0)
        if name in self.errors:
            raise self.errors[name]
        if name in self.results:
            return Response(self.results[name], [f"{name} failed".encode()])
        return None

    @staticmethod
    def _unquote(value: str) -> str:
        if value.startswith('"') and value.endswith('"'):
            return value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
        return value

    @staticmethod
    def _ids(message_set: str) -> list[int]:
        return [int(i) for i in message_set.split(",")]

    def _messages(self) -> list[FakeMessage]:
        return self.folders[self.selected]

    # aioimaplib client surface

    @property
    def _client_task(self):
        return self._noop()

    async def _noop(self):
        return None

    async def wait_hello_from_server(self):
        if "HELLO" in self.errors:
            raise self.errors["HELLO"]
        return None

    async def login(self, user, password):
        forced = await self._record("LOGIN", user)
        if forced:
            return forced
        if password != self.password:
            return Response("NO", [b"[AUTHENTICATIONFAILED] Invalid credentials"])
        return Response("OK", [b"LOGIN completed"])

    async def id(self, **kwargs):
        return Response("OK", [b"ID completed"])

    async def logout(self):
        await self._record("LOGOUT")
        return Response("OK", [b"LOGOUT completed"])

    async def select(self, mailbox):
        forced = await self._record("SELECT", mailbox)
        if forced:
            return forced
        name = self._unquote(mailbox)
        if name not in self.folders:
            return Response("NO", [b"Mailbox doesn't exist"])
        self.selected = name
        count = len(self.folders[name])
        return Response("OK", [f"{count} EXISTS".encode(), b"0 RECENT", b"[READ-WRITE] SELECT completed"])

    async def list(self, reference, pattern):
        lines = [f'(\\HasNoChildren) "/" "{name}"'.encode() for name in self.folders]
        forced = await self._record("LIST", reference, pattern)
        if forced:
            return Response(forced.result, [*lines, *forced.lines])
        return Response("OK", [*lines, b"LIST completed"])

    async def search(self, *criteria):
        forced = await self._record("SEARCH", *criteria)
        if forced:
            return forced
        tokens = list(criteria)
        matches = []
        for seq, message in enumerate(self._messages(), start=1):
            if "UNSEEN" in tokens and "\\Seen" in message.flags:
                continue
            if "SEEN" in tokens and "\\Seen" not in message.flags:
                continue
            if "SUBJECT" in tokens:
                wanted = self._unquote(tokens[tokens.index("SUBJECT") + 1]).encode()
                if wanted.lower() not in message.body.lower():
                    continue
            matches.append(seq)
        return Response("OK", [" ".join(str(i) for i in matches).encode(), b"SEARCH completed"])

    async def fetch(self, message_set, items):
        forced = await self._record("FETCH", message_set, items)
        if forced:
            return forced
        lines = []
        messages = self._messages()
        for seq in self._ids(message_set):
            if seq > len(messages):
                continue
            message = messages[seq - 1]
            flags = " ".join(sorted(message.flags))
            size = len(message.body)
            if self.uid_after_literal:
                lines.append(f"{seq} FETCH (FLAGS ({flags}) RFC822.SIZE {size} BODY[] {{{size}}}".encode())
                lines.append(bytearray(message.body))
                lines.append(f" UID {message.uid})".encode())
            else:
                lines.append(f"{seq} FETCH (UID {message.uid} FLAGS ({flags}) RFC822.SIZE {size} BODY[] {{{size}}}".encode())
                lines.append(bytearray(message.body))
                lines.append(b")")
        lines.append(b"FETCH completed")
        return Response("OK", lines)

    async def store(self, message_set, operation, flags):
        forced = await self._record("STORE", message_set, operation, flags)
        if forced:
            return forced
        values = set(flags.strip("()").split())
        lines = []
        messages = self._messages()
        for seq in self._ids(message_set):
            message = messages[seq - 1]
            if operation.startswith("+"):
                message.flags |= values
            else:
                message.flags -= values
            lines.append(f"{seq} FETCH (FLAGS ({' '.join(sorted(message.flags))}))".encode())
        lines.append(b"STORE completed")
        return Response("OK", lines)

    async def copy(self, message_set, mailbox):
        forced = await self._record("COPY", message_set, mailbox)
        if forced:
            return forced
        name = self._unquote(mailbox)
        if name not in self.folders:
            return Response("NO", [b"[TRYCREATE] Mailbox doesn't exist"])
        messages = self._messages()
        for seq in self._ids(message_set):
            self.add(name, messages[seq - 1].body, messages[seq - 1].flags - {"\\Deleted"})
        return Response("OK", [b"COPY completed"])

    async def move(self, message_set, mailbox):
        forced = await self._record("MOVE", message_set, mailbox)
        if forced:
            return forced
        name = self._unquote(mailbox)
        if name not in self.folders:
            return Response("NO", [b"[TRYCREATE] Mailbox doesn't exist"])
        messages = self._messages()
        moving = [messages[seq - 1] for seq in self._ids(message_set)]
        for message in moving:
            self.add(name, message.body, message.flags)
            messages.remove(message)
        return Response("OK", [b"MOVE completed"])

    async def expunge(self):
        forced = await self._record("EXPUNGE")
        if forced:
            return forced
        messages = self._messages()
        lines = []
        for seq in range(len(messages), 0, -1):
            if "\\Deleted" in messages[seq - 1].flags:
                del messages[seq - 1]
                lines.append(f"{seq} EXPUNGE".encode())
        lines.append(b"EXPUNGE completed")
        return Response("OK", lines)


@pytest.fixture
def fake_imap():
    return FakeIMAP()


@pytest.fixture
def imap_server():
    return EmailServer(
        user_name="bob@example.com",
        password="secret",
        host="imap.example.com",
        port=993,
        use_ssl=True,
    )


@pytest.fixture
def session(imap_server, fake_imap):
    mailbox = MailboxSession(imap_server)
    mailbox.imap_class = lambda host, port: fake_imap
    return mailbox


@pytest.fixture
def settings(monkeypatch):
    for name in ("IMAP_HOST", "IMAP_PORT", "IMAP_TLS", "SMTP_HOST", "SMTP_PORT", "SMTP_TLS", "USE_OAUTH"):
        monkeypatch.delenv(name, raising=False)
    return Settings(
        _env_file=None,
        imap_username="bob@example.com",
        imap_password="secret",
        smtp_username="bob@example.com",
        smtp_password="secret",
        email_address="bob@example.com",
        full_name="Bob Example",
    )
