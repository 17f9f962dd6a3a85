from datetime import datetime, timezone
from unittest.mock import patch

from conftest import make_message

from mcp_email_gateway.emails import decoder
from mcp_email_gateway.emails.decoder import decode_message
from mcp_email_gateway.emails.models import RawMessage


def _raw(body: bytes, seq: int = 7) -> RawMessage:
    return RawMessage(seq=seq, uid=107, size=len(body), flags=["\\Seen"], body=body)


class TestDecodeMessage:
    def test_headers_and_metadata(self):
        body = make_message(
            subject="Quarterly report",
            sender="Alice Example <alice@example.com>",
            to="Bob <bob@example.com>, carol@example.com",
            cc="dave@example.com",
            message_id="<abc@example.com>",
        )
        email = decode_message(_raw(body))

        assert email.id == 7
        assert email.uid == 107
        assert email.size == len(body)
        assert email.flags == ["\\Seen"]
        assert email.message_id == "<abc@example.com>"
        assert email.subject == "Quarterly report"
        assert email.from_ == ["alice@example.com"]
        assert email.to == ["bob@example.com", "carol@example.com"]
        assert email.cc == ["dave@example.com"]
        assert email.date == datetime(2006, 1, 2, 15, 4, 5, tzinfo=timezone.utc)

    def test_text_and_html_alternative(self):
        email = decode_message(_raw(make_message(text="plain body", html="<p>rich body</p>")))
        assert email.text_body.strip() == "plain body"
        assert email.html_body.strip() == "<p>rich body</p>"

    def test_html_only(self):
        email = decode_message(_raw(make_message(text=None, html="<b>hi</b>")))
        assert email.text_body is None
        assert email.html_body.strip() == "<b>hi</b>"

    def test_attachment_only_message_has_no_bodies(self):
        body = make_message(text=None, attachments=[("report.pdf", "application/pdf", b"%PDF-1.4")])
        email = decode_message(_raw(body), include_attachments=True)

        assert email.text_body is None
        assert email.html_body is None
        assert len(email.attachments) == 1
        assert email.attachments[0].filename == "report.pdf"
        assert email.attachments[0].content_type == "application/pdf"
        assert email.attachments[0].data == b"%PDF-1.4"
        assert email.attachments[0].size == len(b"%PDF-1.4")

    def test_attachments_not_materialized_unless_requested(self):
        body = make_message(attachments=[("a.txt", "text/plain", b"one"), ("b.png", "image/png", b"\x89PNG")])
        email = decode_message(_raw(body), include_attachments=False)

        assert email.attachments == []
        assert email.text_body.strip() == "Hello Bob"

    def test_attachments_kept_in_mime_order(self):
        body = make_message(attachments=[("a.txt", "text/plain", b"one"), ("b.png", "image/png", b"\x89PNG")])
        email = decode_message(_raw(body), include_attachments=True)

        assert [a.filename for a in email.attachments] == ["a.txt", "b.png"]
        # The text attachment must not be mistaken for the body.
        assert email.text_body.strip() == "Hello Bob"

    def test_last_text_part_wins(self):
        body = (
            b"From: alice@example.com\r\n"
            b"To: bob@example.com\r\n"
            b"Subject: two parts\r\n"
            b"MIME-Version: 1.0\r\n"
            b'Content-Type: multipart/mixed; boundary="XX"\r\n\r\n'
            b"--XX\r\nContent-Type: text/plain\r\n\r\nfirst\r\n"
            b"--XX\r\nContent-Type: text/plain\r\n\r\nsecond\r\n"
            b"--XX--\r\n"
        )
        assert decode_message(_raw(body)).text_body.strip() == "second"

    def test_missing_headers(self):
        email = decode_message(_raw(b"\r\njust a body\r\n"))
        assert email.message_id == ""
        assert email.subject == ""
        assert email.from_ == []
        assert email.date is None
        assert email.text_body.strip() == "just a body"

    def test_unparseable_date_is_none(self):
        email = decode_message(_raw(make_message(date="not a date")))
        assert email.date is None

    def test_declared_charset_is_used(self):
        body = (
            b"From: alice@example.com\r\n"
            b"Subject: latin\r\n"
            b"Content-Type: text/plain; charset=iso-8859-1\r\n\r\n"
            b"caf\xe9\r\n"
        )
        assert decode_message(_raw(body)).text_body.strip() == "café"

    def test_unknown_charset_falls_back_to_utf8(self):
        body = b"Subject: odd\r\nContent-Type: text/plain; charset=x-unknown\r\n\r\nplain text\r\n"
        assert decode_message(_raw(body)).text_body.strip() == "plain text"

    def test_empty_body_yields_metadata_only(self):
        email = decode_message(RawMessage(seq=4, uid=9, size=0, flags=[]))
        assert email.id == 4
        assert email.uid == 9
        assert email.text_body is None
        assert email.html_body is None

    def test_undecodable_part_is_skipped(self):
        body = make_message(text="body", attachments=[("a.txt", "text/plain", b"data")])
        real_leaf = decoder._leaf_from_part

        def flaky(part):
            if part.get_filename() == "a.txt":
                raise ValueError("corrupt part")
            return real_leaf(part)

        with patch("mcp_email_gateway.emails.decoder._leaf_from_part", side_effect=flaky):
            email = decode_message(_raw(body), include_attachments=True)

        assert email.attachments == []
        assert email.text_body.strip() == "body"

    def test_parse_failure_returns_metadata(self):
        with patch("mcp_email_gateway.emails.decoder.BytesParser.parsebytes", side_effect=ValueError("boom")):
            email = decode_message(_raw(b"Subject: x\r\n\r\ny"))
        assert email.id == 7
        assert email.subject == ""
        assert email.text_body is None
