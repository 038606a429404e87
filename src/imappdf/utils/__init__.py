"""Utility functions for imappdf."""

from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

import structlog

logger = structlog.get_logger()

FILE_TIMESTAMP_FORMAT = "%Y.%m.%d-%H%M%S"
SUBJECT_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def file_timestamp(now: datetime | None = None) -> str:
    """Timestamp used in generated file names and mail bodies."""
    return (now or datetime.now()).strftime(FILE_TIMESTAMP_FORMAT)


def subject_timestamp(now: datetime | None = None) -> str:
    """Timestamp used in the ``[OCR ...]`` subject tag."""
    return (now or datetime.now()).strftime(SUBJECT_TIMESTAMP_FORMAT)


def remove_files(paths: Iterable[Path]) -> None:
    """Delete temporary files, logging the ones that cannot be removed."""
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("temp_file_remove_failed", path=str(path), error=str(exc))
