"""Outbound mail composition and SMTP transport."""

from __future__ import annotations

import smtplib
import ssl
from collections.abc import Callable, Mapping
from datetime import datetime
from email.message import EmailMessage
from email.utils import formatdate, getaddresses, make_msgid
from pathlib import Path
from typing import Any

import structlog

from imappdf.config import Settings
from imappdf.exceptions import DispatchError
from imappdf.utils import file_timestamp, subject_timestamp

logger = structlog.get_logger()


def build_subject(subject: str | None, now: datetime) -> str:
    """Prefix the original subject with an OCR tag, or fall back to a generic one."""
    if subject:
        return f"[OCR {subject_timestamp(now)}] {subject}"
    return f"Scanned PDF {file_timestamp(now)}"


def compose_message(
    *,
    sender: str,
    recipient: str,
    attachments: Mapping[str, Path],
    subject: str | None = None,
    now: datetime | None = None,
) -> EmailMessage:
    """Build the outbound message with one ``application/pdf`` part per file.

    Args:
        sender: From/Sender address.
        recipient: Single To address.
        attachments: Attachment name -> file to attach (named ``scan-<name>``).
        subject: Original subject, if any.
        now: Timestamp to render; defaults to the current local time.

    Raises:
        OSError: If an attachment file cannot be read.
    """

    now = now or datetime.now()
    msg = EmailMessage()
    if sender:
        msg["From"] = sender
        msg["Sender"] = sender
    msg["To"] = recipient
    msg["Subject"] = build_subject(subject, now)
    msg["Date"] = formatdate(now.timestamp(), localtime=True)
    msg["Message-ID"] = make_msgid()
    msg.set_content(f"See attached PDFs {file_timestamp(now)}\n", charset="utf-8")

    for name, path in attachments.items():
        msg.add_attachment(
            path.read_bytes(),
            maintype="application",
            subtype="pdf",
            filename=f"scan-{name}",
        )
    return msg


def _envelope_address(value: str) -> str:
    parsed = [addr for _, addr in getaddresses([value]) if addr]
    return parsed[0] if parsed else value


class SMTPSender:
    """Sends the scanned PDFs to a single recipient."""

    def __init__(
        self,
        settings: Settings | None = None,
        smtp_factory: Callable[..., Any] | None = None,
    ) -> None:
        """Initialize the sender.

        Args:
            settings: Application settings. If None, uses default settings.
            smtp_factory: Callable returning an ``smtplib.SMTP``-like object.
                Defaults to ``SMTP_SSL`` or ``SMTP`` depending on settings.
        """
        from imappdf.config import get_settings

        self.settings = settings or get_settings()
        self._smtp_factory = smtp_factory

    def _connect(self) -> Any:
        s = self.settings
        if self._smtp_factory is not None:
            return self._smtp_factory(s.mail_smtp_host, s.mail_smtp_port)
        if s.mail_smtp_ssl_enable:
            return smtplib.SMTP_SSL(
                s.mail_smtp_host, s.mail_smtp_port, context=ssl.create_default_context()
            )
        return smtplib.SMTP(s.mail_smtp_host, s.mail_smtp_port)

    def send_mail(
        self,
        recipient: str,
        attachments: Mapping[str, Path],
        subject: str | None = None,
    ) -> EmailMessage:
        """Compose and send one message carrying every attachment.

        Returns:
            The message that was sent.

        Raises:
            DispatchError: If composing or sending fails.
        """
        s = self.settings
        try:
            msg = compose_message(
                sender=s.mail_smtp_from,
                recipient=recipient,
                attachments=attachments,
                subject=subject,
            )
        except OSError as exc:
            raise DispatchError(f"Cannot compose mail for {recipient}: {exc}") from exc

        try:
            with self._connect() as smtp:
                if s.mail_smtp_starttls_enable and not s.mail_smtp_ssl_enable:
                    smtp.starttls(context=ssl.create_default_context())
                if s.mail_smtp_user:
                    smtp.login(s.mail_smtp_user, s.mail_smtp_pass)
                smtp.send_message(
                    msg,
                    from_addr=_envelope_address(s.mail_smtp_from),
                    to_addrs=[recipient],
                )
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("mail_send_failed", recipient=recipient, error=str(exc))
            raise DispatchError(f"Cannot send mail to {recipient}: {exc}") from exc

        logger.info(
            "pdf_forwarded",
            recipient=recipient,
            attachments=sorted(attachments),
        )
        return msg
