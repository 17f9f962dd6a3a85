"""Decode fetched IMAP messages into :class:`Email` records.

The decoder never raises on message content. A part that cannot be decoded
is logged and skipped; a body that cannot be parsed at all still yields an
``Email`` carrying the fetch metadata.
"""

import email.utils
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime
from email.message import Message
from email.parser import BytesParser
from email.policy import default

from mcp_email_gateway.emails.models import Attachment, Email, RawMessage
from mcp_email_gateway.log import logger


@dataclass
class InlinePart:
    content_type: str
    payload: bytes
    charset: str


@dataclass
class AttachmentPart:
    filename: str
    content_type: str
    payload: bytes


def _leaf_from_part(part: Message) -> InlinePart | AttachmentPart:
    content_type = part.get_content_type()
    payload = part.get_payload(decode=True) or b""
    if part.get_content_disposition() == "attachment":
        return AttachmentPart(filename=part.get_filename() or "", content_type=content_type, payload=payload)
    return InlinePart(content_type=content_type, payload=payload, charset=part.get_content_charset("utf-8"))


def _iter_leaves(part: Message) -> Iterator[InlinePart | AttachmentPart]:
    """Walk the MIME tree depth-first, yielding one result per leaf part."""
    if part.is_multipart():
        for child in part.get_payload():
            yield from _iter_leaves(child)
        return
    try:
        yield _leaf_from_part(part)
    except Exception as e:
        logger.warning(f"Skipping undecodable MIME part ({part.get_content_type()}): {e!s}")


def _decode_text(payload: bytes, charset: str) -> str:
    try:
        return payload.decode(charset)
    except (LookupError, UnicodeDecodeError):
        return payload.decode("utf-8", errors="replace")


def _addresses(message: Message, header: str) -> list[str]:
    try:
        values = [str(value) for value in message.get_all(header, [])]
    except Exception as e:
        logger.debug(f"Unreadable {header} header: {e!s}")
        return []
    return [addr for _, addr in email.utils.getaddresses(values) if addr]


def _header(message: Message, name: str) -> str:
    try:
        return str(message.get(name, "") or "").strip()
    except Exception as e:
        logger.debug(f"Unreadable {name} header: {e!s}")
        return ""


def _parse_date(value: str) -> datetime | None:
    if not value:
        return None
    try:
        return email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError) as e:
        logger.debug(f"Failed to parse date '{value}': {e}")
        return None


def decode_message(raw: RawMessage, include_attachments: bool = False) -> Email:
    decoded = Email(id=raw.seq, uid=raw.uid, size=raw.size, flags=list(raw.flags))
    if not raw.body:
        return decoded

    try:
        message = BytesParser(policy=default).parsebytes(raw.body)
    except Exception as e:
        logger.warning(f"Could not parse body of message {raw.seq}: {e!s}")
        return decoded

    decoded.message_id = _header(message, "Message-ID")
    decoded.subject = _header(message, "Subject")
    decoded.date = _parse_date(_header(message, "Date"))
    decoded.from_ = _addresses(message, "From")
    decoded.to = _addresses(message, "To")
    decoded.cc = _addresses(message, "Cc")
    decoded.bcc = _addresses(message, "Bcc")

    for leaf in _iter_leaves(message):
        if isinstance(leaf, AttachmentPart):
            if include_attachments:
                decoded.attachments.append(
                    Attachment(
                        filename=leaf.filename,
                        content_type=leaf.content_type,
                        size=len(leaf.payload),
                        data=leaf.payload,
                    )
                )
        # When a message carries several parts of the same text type, the last one wins.
        elif leaf.content_type == "text/plain":
            decoded.text_body = _decode_text(leaf.payload, leaf.charset)
        elif leaf.content_type == "text/html":
            decoded.html_body = _decode_text(leaf.payload, leaf.charset)

    return decoded
