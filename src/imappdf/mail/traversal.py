"""PDF attachment discovery in nested MIME trees.

The walk is an explicit depth-first stack over the parts of a message, in
declaration order, bounded by a maximum number of inspected parts so that a
malformed or hostile message cannot grow the walk without limit.
"""

from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Iterator
from email.message import Message
from io import BytesIO
from pathlib import Path
from types import TracebackType
from typing import Literal

import structlog

from imappdf.utils import file_timestamp, remove_files

logger = structlog.get_logger()

COPY_BUFFER_SIZE = 32 * 1024
PDF_CONTENT_TYPE = "application/pdf"

# Content types that say nothing about the payload; the filename decides.
GENERIC_CONTENT_TYPES = frozenset(
    {
        "",
        "application/octet-stream",
        "binary/octet-stream",
        "application/x-download",
        "application/download",
    }
)

TraversalMode = Literal["all", "first"]


class AttachmentSet:
    """Temporary PDF files extracted from one message, keyed by filename.

    Used as a context manager: every file added or tracked is deleted on exit,
    whether handling succeeded or not.
    """

    def __init__(self, directory: Path | None = None) -> None:
        self.directory = directory
        self._files: dict[str, Path] = {}
        self._tracked: list[Path] = []

    def __enter__(self) -> AttachmentSet:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.cleanup()

    def __len__(self) -> int:
        return len(self._files)

    def __iter__(self) -> Iterator[str]:
        return iter(self._files)

    def __contains__(self, name: object) -> bool:
        return name in self._files

    @property
    def files(self) -> dict[str, Path]:
        """Snapshot of filename -> temp file path."""
        return dict(self._files)

    def unique_name(self, name: str) -> str:
        """Return ``name``, or ``name`` with a counter suffix if it is taken."""
        if name not in self._files:
            return name
        path = Path(name)
        stem, suffix = path.stem, path.suffix
        counter = 1
        while f"{stem}-{counter}{suffix}" in self._files:
            counter += 1
        return f"{stem}-{counter}{suffix}"

    def new_temp_path(self) -> Path:
        """Create an empty temp file that this set will delete on cleanup."""
        handle, name = tempfile.mkstemp(prefix="scan-", suffix=".pdf", dir=self.directory)
        # Only the path is needed; writers reopen it.
        os.close(handle)
        path = Path(name)
        self._tracked.append(path)
        return path

    def add(self, name: str, payload: bytes) -> str:
        """Write ``payload`` to a new temp file and register it.

        Returns:
            The (possibly disambiguated) name the file was stored under.
        """
        stored_name = self.unique_name(name)
        path = self.new_temp_path()
        with path.open("wb") as fh:
            shutil.copyfileobj(BytesIO(payload), fh, COPY_BUFFER_SIZE)
        self._files[stored_name] = path
        logger.debug("attachment_written", attachment=stored_name, path=str(path), size=len(payload))
        return stored_name

    def track(self, path: Path) -> None:
        """Register an externally created file (e.g. OCR output) for cleanup."""
        self._tracked.append(path)

    def cleanup(self) -> None:
        """Delete every file this set knows about."""
        remove_files(self._tracked)
        self._tracked.clear()
        self._files.clear()


def is_pdf_part(part: Message) -> bool:
    """Decide whether a leaf part is a PDF attachment.

    The declared content type is authoritative; the ``.pdf`` filename suffix
    only counts when the content type is absent or generic.
    """

    content_type = _declared_content_type(part)
    if content_type.startswith(PDF_CONTENT_TYPE):
        return True
    if content_type in GENERIC_CONTENT_TYPES:
        filename = part.get_filename() or ""
        return filename.lower().endswith(".pdf")
    return False


def _declared_content_type(part: Message) -> str:
    raw = part.get("Content-Type")
    if raw is None:
        return ""
    # get_content_type() reports text/plain for a value without a subtype.
    value = str(raw).split(";", 1)[0].strip()
    if value.count("/") != 1:
        return ""
    return part.get_content_type().lower()


def _children(part: Message) -> list[Message]:
    payload = part.get_payload()
    if isinstance(payload, list):
        return [p for p in payload if isinstance(p, Message)]
    return []


def traverse(
    content: Message,
    attachments: AttachmentSet,
    *,
    mode: TraversalMode = "all",
    max_parts: int = 500,
) -> AttachmentSet:
    """Collect PDF attachments from ``content`` into ``attachments``.

    Args:
        content: Root of the parsed message.
        attachments: Destination set; owns the written temp files.
        mode: ``"all"`` collects every PDF, ``"first"`` stops after one.
        max_parts: Upper bound on inspected parts.

    Returns:
        The same ``attachments`` set, for convenience.

    Raises:
        OSError: If a temp file cannot be written. Files written so far stay
            registered in ``attachments`` so the caller's cleanup removes them.
    """

    # The original mail must be a multipart container.
    if not content.is_multipart():
        logger.debug("content_not_multipart", content_type=content.get_content_type())
        return attachments

    stack = list(reversed(_children(content)))
    inspected = 0
    while stack:
        if inspected >= max_parts:
            logger.warning("traversal_part_limit_reached", max_parts=max_parts)
            break
        part = stack.pop()
        inspected += 1

        if part.is_multipart():
            stack.extend(reversed(_children(part)))
            continue

        if not is_pdf_part(part):
            continue

        payload = part.get_payload(decode=True)
        if not isinstance(payload, bytes):
            logger.debug("attachment_unreadable", filename=part.get_filename())
            continue

        name = part.get_filename() or f"{file_timestamp()}.pdf"
        stored = attachments.add(name, payload)
        logger.info("pdf_attachment_found", attachment=stored, size=len(payload))

        if mode == "first":
            break

    return attachments
