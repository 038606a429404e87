"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from email.mime.application import MIMEApplication
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path

import pytest

from imappdf.exceptions import DispatchError
from imappdf.mail.sender import compose_message
from imappdf.models import MailMessage


class FakeMailbox:
    """Records flag updates instead of talking to a server."""

    def __init__(self) -> None:
        self.flags: dict[int, list[str]] = {}

    def add_flags(self, uid: int, flags: list[str]) -> None:
        self.flags.setdefault(uid, []).extend(flags)


class FakeOCR:
    """OCR engine that writes a fixed payload, or fails on demand.

    ``fail_for`` holds input payloads for which OCR should fail.
    """

    def __init__(
        self,
        work_dir: Path,
        payload: bytes = b"ocr-output!!",
        fail_for: set[bytes] | None = None,
        fail_all: bool = False,
    ) -> None:
        self.work_dir = work_dir
        self.payload = payload
        self.fail_for = fail_for or set()
        self.fail_all = fail_all
        self.calls: list[tuple[Path, str, bytes]] = []
        self.outputs: list[Path] = []

    def run(self, source: Path, lang: str) -> Path | None:
        self.calls.append((source, lang, source.read_bytes()))
        if self.fail_all or source.read_bytes() in self.fail_for:
            return None
        handle = tempfile.NamedTemporaryFile(prefix="ocr-", suffix=".pdf", dir=self.work_dir, delete=False)
        with handle:
            handle.write(self.payload)
        output = Path(handle.name)
        self.outputs.append(output)
        return output


@dataclass
class SentMail:
    recipient: str
    subject: str | None
    files: dict[str, bytes]
    paths: dict[str, Path]
    message: object


@dataclass
class FakeDispatcher:
    """Composes the outbound message like SMTPSender but keeps it in memory."""

    sender: str = "Scanner <scanner@example.com>"
    error: Exception | None = None
    sent: list[SentMail] = field(default_factory=list)

    def send_mail(self, recipient: str, attachments: Mapping[str, Path], subject: str | None = None):
        if self.error is not None:
            raise self.error
        msg = compose_message(
            sender=self.sender,
            recipient=recipient,
            attachments=attachments,
            subject=subject,
        )
        self.sent.append(
            SentMail(
                recipient=recipient,
                subject=subject,
                files={name: path.read_bytes() for name, path in attachments.items()},
                paths=dict(attachments),
                message=msg,
            )
        )
        return msg


@pytest.fixture
def mock_settings(tmp_path):
    """Provide settings that keep temp files inside the test directory."""
    from imappdf.config import Settings

    return Settings(
        mail_smtp_from="Scanner <scanner@example.com>",
        work_dir=tmp_path,
        log_level="DEBUG",
    )


@pytest.fixture
def fake_mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def fake_ocr(tmp_path) -> FakeOCR:
    return FakeOCR(tmp_path)


@pytest.fixture
def failing_ocr(tmp_path) -> FakeOCR:
    return FakeOCR(tmp_path, fail_all=True)


@pytest.fixture
def make_ocr(tmp_path):
    """Build a FakeOCR writing into the test directory."""

    def _make(**kwargs) -> FakeOCR:
        return FakeOCR(tmp_path, **kwargs)

    return _make


@pytest.fixture
def fake_dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def failing_dispatcher() -> FakeDispatcher:
    return FakeDispatcher(error=DispatchError("smtp down"))


@pytest.fixture
def make_pdf_part():
    """Build a PDF attachment part."""

    def _make(name: str | None = "doc.pdf", payload: bytes = b"0123456789", subtype: str = "pdf") -> MIMEBase:
        part = MIMEApplication(payload, _subtype=subtype)
        if name is not None:
            part.add_header("Content-Disposition", "attachment", filename=name)
        return part

    return _make


@pytest.fixture
def make_multipart():
    """Build a multipart container holding the given parts."""

    def _make(*parts: MIMEBase, subtype: str = "mixed") -> MIMEMultipart:
        container = MIMEMultipart(subtype)
        for part in parts:
            container.attach(part)
        return container

    return _make


@pytest.fixture
def make_message(fake_mailbox):
    """Build a parsed MailMessage with a text body plus the given parts."""

    def _make(
        *parts: MIMEBase,
        sender: str | None = "Alice <alice@example.com>",
        to: str | None = "scan@example.com",
        subject: str | None = "Invoice",
        flags: tuple[str, ...] = (),
        uid: int = 1,
        message_id: str = "<m1@example.com>",
    ) -> MailMessage:
        root = MIMEMultipart("mixed")
        root.attach(MIMEText("Please see the attachment.", "plain"))
        for part in parts:
            root.attach(part)
        if sender is not None:
            root["From"] = sender
        if to is not None:
            root["To"] = to
        if subject is not None:
            root["Subject"] = subject
        root["Message-ID"] = message_id
        return MailMessage.from_bytes(uid, root.as_bytes(), flags=list(flags), mailbox=fake_mailbox)

    return _make


@pytest.fixture
def sample_raw_mail() -> bytes:
    """A raw single-part message, as an IMAP server would return it."""
    return (
        b"From: Bob <bob@example.com>\r\n"
        b"To: scan@example.com, other@example.com\r\n"
        b"Subject: =?utf-8?q?Rechnung_M=C3=A4rz?=\r\n"
        b"Message-ID: <raw1@example.com>\r\n"
        b"MIME-Version: 1.0\r\n"
        b"Content-Type: text/plain; charset=utf-8\r\n"
        b"\r\n"
        b"no attachment here\r\n"
    )
