"""Data models for imappdf.

This module contains Pydantic models for data validation and serialization.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from imappdf.models.message import DELETED, SEEN, FlagStore, MailMessage


class HandleOutcome(str, Enum):
    """What happened to a single message."""

    SKIPPED = "skipped"
    NO_ATTACHMENTS = "no_attachments"
    FORWARDED = "forwarded"


class ProcessingResult(BaseModel):
    """Result of handling a single message."""

    uid: int = Field(description="IMAP UID of the handled message")
    message_id: str = Field(default="", description="Message-ID header, for log correlation")
    outcome: HandleOutcome = Field(description="How the message was handled")
    recipient: Optional[str] = Field(default=None, description="Address the PDFs were forwarded to")
    attachments: list[str] = Field(
        default_factory=list,
        description="Names of the forwarded attachments",
    )
    ocr_succeeded: int = Field(default=0, ge=0, description="Attachments with an OCR result")
    processed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Processing timestamp",
    )


__all__ = [
    "DELETED",
    "SEEN",
    "FlagStore",
    "HandleOutcome",
    "MailMessage",
    "ProcessingResult",
]
