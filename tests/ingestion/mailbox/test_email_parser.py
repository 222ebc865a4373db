"""Tests for raw message parsing into inbound mail events."""

from __future__ import annotations

from email.message import EmailMessage

import pytest

from dealdesk.ingestion.mailbox.email_parser import InboundMail, MailParser
from dealdesk.ingestion.mailbox.pipeline import normalize_attachments


def _raw_message(*, with_attachment: bool = False, html: bool = True) -> bytes:
    msg = EmailMessage()
    msg["From"] = "Alice Example <Alice@Co.com>"
    msg["To"] = "Ops <ops@co.com>, second@co.com"
    msg["Subject"] = "Quarterly numbers"
    msg["Message-ID"] = "<abc123@mail.co.com>"
    msg["In-Reply-To"] = "<prev@mail.co.com>"
    msg["References"] = "<root@mail.co.com> <prev@mail.co.com>"
    msg["Date"] = "Mon, 06 Jan 2025 10:30:00 +0000"
    msg.set_content("Plain body\n")
    if html:
        msg.add_alternative("<p>Plain body</p>", subtype="html")
    if with_attachment:
        msg.add_attachment(
            b"%PDF-1.4 fake",
            maintype="application",
            subtype="pdf",
            filename="report.pdf",
        )
    return msg.as_bytes()


def test_parse_headers_and_bodies() -> None:
    mail = MailParser().parse(_raw_message(), uid=42)

    assert mail.from_ == [{"address": "Alice@Co.com", "name": "Alice Example"}]
    assert [entry["address"] for entry in mail.to] == ["ops@co.com", "second@co.com"]
    assert mail.subject == "Quarterly numbers"
    assert mail.text.strip() == "Plain body"
    assert "<p>Plain body</p>" in mail.html
    assert mail.message_id == "abc123@mail.co.com"
    assert mail.in_reply_to == "prev@mail.co.com"
    assert mail.references == ["root@mail.co.com", "prev@mail.co.com"]
    assert mail.date is not None and mail.date.year == 2025
    assert mail.uid == 42
    assert mail.attachments == []


def test_parse_collects_attachment_metadata() -> None:
    mail = MailParser().parse(_raw_message(with_attachment=True))

    assert len(mail.attachments) == 1
    attachment = mail.attachments[0]
    assert attachment["filename"] == "report.pdf"
    assert attachment["content_type"] == "application/pdf"
    assert attachment["size"] == len(b"%PDF-1.4 fake")


def test_parsed_attachments_feed_the_pipeline_normaliser() -> None:
    mail = MailParser().parse(_raw_message(with_attachment=True))

    records = normalize_attachments(mail.attachments)

    assert [(r.filename, r.content_type, r.size) for r in records] == [
        ("report.pdf", "application/pdf", len(b"%PDF-1.4 fake"))
    ]


def test_parse_plain_only_message() -> None:
    mail = MailParser().parse(_raw_message(html=False))
    assert mail.html is None
    assert mail.text.strip() == "Plain body"


def test_missing_headers_become_none() -> None:
    raw = b"From: someone@co.com\r\n\r\nbody\r\n"
    mail = MailParser().parse(raw)

    assert mail.subject is None
    assert mail.message_id is None
    assert mail.to == []
    assert mail.references == []


def test_parse_failure_raises_value_error(monkeypatch) -> None:
    parser = MailParser()

    def _boom(*_args, **_kwargs):
        raise RuntimeError("broken")

    monkeypatch.setattr(parser, "_extract_body", _boom)
    with pytest.raises(ValueError):
        parser.parse(b"Subject: x\r\n\r\n")


def test_inbound_mail_accepts_loose_shapes() -> None:
    mail = InboundMail(
        **{"from": "a@co.com", "to": ["b@co.com"], "message_id": "  ", "attachments": None}
    )
    assert mail.from_ == "a@co.com"
    assert mail.message_id is None
    assert mail.attachments == []
