"""Per-message processing.

This module decides whether a message qualifies, extracts its PDF
attachments, runs OCR on them, and forwards the result.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

import structlog
from structlog.contextvars import bound_contextvars

from imappdf.config import Settings
from imappdf.mail.sender import SMTPSender
from imappdf.mail.traversal import AttachmentSet, traverse
from imappdf.models import DELETED, SEEN, HandleOutcome, MailMessage, ProcessingResult
from imappdf.ocr import OCREngine, OCRWrapper, run_ocr_all

logger = structlog.get_logger()


class Dispatcher(Protocol):
    """Sends the outbound file set."""

    def send_mail(self, recipient: str, attachments: Mapping[str, Path], subject: str | None = None) -> object: ...


def resolve_recipient(sender: str, recipient: str, settings: Settings) -> str:
    """Find the forwarding address for a message.

    A ``fwd.<recipient>`` override wins. Otherwise the ``processing.fallback``
    policy applies: ``sender`` forwards back to the original sender,
    ``default`` uses ``fwd.default`` (or the sender when that is unset).
    """

    override = settings.forward_address(recipient)
    if override:
        target = override
    elif settings.processing_fallback == "default" and settings.fwd_default:
        target = settings.fwd_default
    else:
        target = sender
    logger.debug("recipient_resolved", recipient=recipient, target=target)
    return target


def choose_output_set(inputs: Mapping[str, Path], ocr_results: Mapping[str, Path]) -> dict[str, Path]:
    """Pick the OCR output per attachment, falling back to the original."""
    if inputs and not any(name in ocr_results for name in inputs):
        logger.info("ocr_no_results_sending_originals", attachments=len(inputs))
    return {name: ocr_results.get(name, path) for name, path in inputs.items()}


class MessageProcessor:
    """Handles a single message from eligibility check to forwarding.

    Collaborators are passed in so tests can fake OCR and SMTP.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        ocr: OCREngine | None = None,
        dispatcher: Dispatcher | None = None,
    ) -> None:
        """Initialize the processor.

        Args:
            settings: Application settings. If None, uses default settings.
            ocr: OCR engine. If None, runs the configured executable.
            dispatcher: Outbound mail sender. If None, uses SMTP.
        """
        from imappdf.config import get_settings

        self.settings = settings or get_settings()
        self.ocr = ocr or OCRWrapper.from_settings(self.settings)
        self.dispatcher = dispatcher or SMTPSender(self.settings)
        logger.info("message_processor_initialized")

    @property
    def skips_seen(self) -> bool:
        """Whether ``\\Seen`` marks a message as already handled.

        Kept messages only get ``\\Seen``, so they must be skipped next time.
        """
        s = self.settings
        return s.processing_require_unseen or not s.delete_after_processing

    def should_handle(self, message: MailMessage) -> bool:
        """Check whether the message qualifies for processing.

        Flags are left untouched; see :meth:`mark_processed`.
        """
        if message.is_deleted:
            logger.debug("message_ignored", reason="deleted")
            return False
        if self.skips_seen and message.is_seen:
            logger.debug("message_ignored", reason="seen")
            return False
        if not message.senders:
            logger.debug("message_ignored", reason="no_sender")
            return False

        recipients = message.to_addrs
        if not recipients:
            logger.debug("message_ignored", reason="no_recipient")
            return False

        logger.info("message_loaded", recipient=recipients[0])
        return True

    def mark_processed(self, message: MailMessage) -> None:
        """Flag a handled message ``\\Seen`` (and ``\\Deleted`` if configured).

        Only called once forwarding succeeded or there was nothing to forward.

        Raises:
            MailboxAccessError: If the server rejects the flags.
        """
        message.add_flag(SEEN)
        if self.settings.delete_after_processing:
            message.add_flag(DELETED)

    def handle_message(self, message: MailMessage) -> ProcessingResult:
        """Handle a single message.

        Returns:
            What happened to the message.

        Raises:
            MailboxAccessError: If the message cannot be flagged.
            DispatchError: If the outbound mail cannot be sent; the message is
                left unflagged so the next cycle retries it.
            OSError: If attachments cannot be written to disk.
        """
        with bound_contextvars(message_id=message.message_id, uid=message.uid):
            if not self.should_handle(message):
                return ProcessingResult(
                    uid=message.uid,
                    message_id=message.message_id,
                    outcome=HandleOutcome.SKIPPED,
                )

            s = self.settings
            with AttachmentSet(s.work_dir) as attachments:
                traverse(
                    message.content,
                    attachments,
                    mode=s.processing_attachments,
                    max_parts=s.processing_max_parts,
                )
                if not attachments:
                    logger.info("no_attachments_found")
                    self.mark_processed(message)
                    return ProcessingResult(
                        uid=message.uid,
                        message_id=message.message_id,
                        outcome=HandleOutcome.NO_ATTACHMENTS,
                    )

                inputs = attachments.files
                ocr_results = run_ocr_all(self.ocr, inputs, s.ocr_lang, s.ocr_max_workers)
                for output in ocr_results.values():
                    attachments.track(output)

                target = resolve_recipient(message.senders[0], message.to_addrs[0], s)
                outbound = choose_output_set(inputs, ocr_results)
                self.dispatcher.send_mail(target, outbound, message.subject or None)
                self.mark_processed(message)

        logger.info(
            "message_forwarded",
            message_id=message.message_id,
            recipient=target,
            attachments=sorted(outbound),
        )
        return ProcessingResult(
            uid=message.uid,
            message_id=message.message_id,
            outcome=HandleOutcome.FORWARDED,
            recipient=target,
            attachments=sorted(outbound),
            ocr_succeeded=len(ocr_results),
        )
