import asyncio
import mimetypes
from datetime import datetime
from email import encoders
from email.header import Header
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid

import aiosmtplib

from mcp_email_gateway.config import EmailServer
from mcp_email_gateway.emails.markdown_utils import render_body
from mcp_email_gateway.emails.models import Email, SendRequest
from mcp_email_gateway.errors import DeliveryError, ToolValidationError
from mcp_email_gateway.log import logger

FORWARD_BANNER = "---------- Forwarded message ---------"


def reply_subject(subject: str) -> str:
    if subject.lower().startswith("re:"):
        return subject
    return f"Re: {subject}"


def forward_subject(subject: str) -> str:
    lowered = subject.lower()
    if lowered.startswith("fwd:") or lowered.startswith("fw:"):
        return subject
    return f"Fwd: {subject}"


def format_forward_date(value: datetime | None) -> str:
    """Format a date like ``Mon, Jan 2, 2006 at 3:04 PM``; empty when unknown."""
    if value is None:
        return ""
    hour = value.hour % 12 or 12
    meridiem = "AM" if value.hour < 12 else "PM"
    return f"{value:%a, %b} {value.day}, {value.year} at {hour}:{value:%M} {meridiem}"


def _encode_header(value: str) -> str | Header:
    # Handle headers with special characters
    if any(ord(c) > 127 for c in value):
        return Header(value, "utf-8")
    return value


def _attachment_part(filename: str, data: bytes, content_type: str | None = None) -> MIMEBase:
    if not content_type:
        content_type, _ = mimetypes.guess_type(filename)
    if not content_type or "/" not in content_type:
        content_type = "application/octet-stream"

    maintype, subtype = content_type.split("/", 1)
    part = MIMEBase(maintype, subtype)
    part.set_payload(data)
    encoders.encode_base64(part)
    part.add_header("Content-Disposition", "attachment", filename=filename)
    logger.info(f"Attached file: {filename} ({content_type})")
    return part


def _assemble(
    sender: str,
    to: list[str],
    subject: str,
    body: str,
    subtype: str,
    cc: list[str] | None = None,
    attachments: list[MIMEBase] | None = None,
) -> MIMEText | MIMEMultipart:
    if attachments:
        msg = MIMEMultipart()
        msg.attach(MIMEText(body, subtype, "utf-8"))
        for part in attachments:
            msg.attach(part)
    else:
        msg = MIMEText(body, subtype, "utf-8")

    msg["Subject"] = _encode_header(subject)
    msg["From"] = _encode_header(sender)
    msg["To"] = ", ".join(to)
    if cc:
        msg["Cc"] = ", ".join(cc)
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid()
    return msg


def build_message(sender: str, request: SendRequest) -> tuple[MIMEText | MIMEMultipart, list[str]]:
    """Build a new message and its envelope recipients.

    Bcc recipients are part of the envelope only; they never appear in a header.
    """
    if not request.to:
        msg = "At least one recipient is required"
        raise ToolValidationError(msg)

    body, subtype = render_body(request.body, is_html=request.is_html, markdown=request.markdown)
    attachments = [_attachment_part(a.filename, a.data) for a in request.attachments]
    msg = _assemble(sender, request.to, request.subject, body, subtype, cc=request.cc, attachments=attachments)
    return msg, [*request.to, *request.cc, *request.bcc]


def build_reply(
    sender: str,
    original: Email,
    body: str,
    reply_all: bool = False,
    is_html: bool = False,
) -> tuple[MIMEText | MIMEMultipart, list[str]]:
    if not original.from_:
        msg = f"Email {original.id} has no sender to reply to"
        raise ToolValidationError(msg)

    to = [original.from_[0]]
    # Reply-all copies everyone the original went to, in header order, duplicates included.
    cc = [*original.to, *original.cc] if reply_all else []
    msg = _assemble(sender, to, reply_subject(original.subject), body, "html" if is_html else "plain", cc=cc)

    if original.message_id:
        msg["In-Reply-To"] = original.message_id
        msg["References"] = original.message_id
    return msg, [*to, *cc]


def forward_body(original: Email, message: str = "") -> tuple[str, str]:
    """Return ``(body, subtype)`` for a forward of ``original``."""
    parts = []
    if message:
        parts.append(f"{message}\n\n")
    parts.append(
        f"{FORWARD_BANNER}\n"
        f"From: {', '.join(original.from_)}\n"
        f"Date: {format_forward_date(original.date)}\n"
        f"Subject: {original.subject}\n"
        f"To: {', '.join(original.to)}\n\n\n"
    )
    if original.html_body:
        parts.append(original.html_body)
        return "".join(parts), "html"
    parts.append(original.text_body or "")
    return "".join(parts), "plain"


def build_forward(
    sender: str,
    original: Email,
    to: list[str],
    message: str = "",
) -> tuple[MIMEText | MIMEMultipart, list[str]]:
    if not to:
        msg = "At least one recipient is required"
        raise ToolValidationError(msg)

    body, subtype = forward_body(original, message)
    attachments = [_attachment_part(a.filename, a.data, a.content_type) for a in original.attachments]
    msg = _assemble(sender, to, forward_subject(original.subject), body, subtype, attachments=attachments)
    return msg, list(to)


class Composer:
    """Builds outbound messages and hands them to the SMTP relay, one connection per message."""

    def __init__(self, email_server: EmailServer, sender: str):
        self.email_server = email_server
        self.sender = sender
        # Port 465 uses implicit TLS, other TLS ports must upgrade with STARTTLS.
        self.smtp_use_tls = self.email_server.use_ssl
        self.smtp_start_tls = self.email_server.start_ssl

    async def send(self, request: SendRequest) -> None:
        msg, recipients = build_message(self.sender, request)
        await self._deliver(msg, recipients)

    async def reply(self, original: Email, body: str, reply_all: bool = False, is_html: bool = False) -> None:
        msg, recipients = build_reply(self.sender, original, body, reply_all=reply_all, is_html=is_html)
        await self._deliver(msg, recipients)

    async def forward(self, original: Email, to: list[str], message: str = "") -> None:
        msg, recipients = build_forward(self.sender, original, to, message)
        await self._deliver(msg, recipients)

    async def _deliver(self, msg: MIMEText | MIMEMultipart, recipients: list[str]) -> None:
        server = self.email_server
        try:
            async with aiosmtplib.SMTP(
                hostname=server.host,
                port=server.port,
                start_tls=self.smtp_start_tls,
                use_tls=self.smtp_use_tls,
            ) as smtp:
                if server.user_name:
                    await smtp.login(server.user_name, server.password)
                await smtp.send_message(msg, recipients=recipients)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
            logger.error(f"SMTP delivery via {server.host}:{server.port} failed: {e!s}")
            raise DeliveryError(f"SMTP delivery failed: {e!s}") from e
        logger.info(f"Delivered message to {len(recipients)} recipient(s) via {server.host}:{server.port}")
