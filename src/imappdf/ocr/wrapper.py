"""Wrapper for the external OCR process.

This module provides the OCR capability used by the message processor. The
engine contract is synchronous (``run(source, lang) -> Path | None``) so tests
can swap in a fake without spawning a real process.
"""

from __future__ import annotations

import os
import subprocess
import tempfile
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Protocol

import structlog

from imappdf.config import Settings

logger = structlog.get_logger()

DEFAULT_LANG = "deu+eng"


class OCREngine(Protocol):
    """Adds a text layer to a PDF."""

    def run(self, source: Path, lang: str) -> Path | None:
        """Return the produced output file, or None if OCR failed."""
        ...


class OCRWrapper:
    """Runs an OCR executable as a child process.

    The command line is ``<command> <args...> <lang> <input> <output>``; the
    child inherits the parent's standard streams.
    """

    def __init__(
        self,
        command: str = "ocrmypdf",
        args: Sequence[str] = ("-c", "-d", "-l"),
        timeout: float | None = None,
        work_dir: Path | None = None,
    ) -> None:
        self.command = command
        self.args = list(args)
        self.timeout = timeout
        self.work_dir = work_dir

    @classmethod
    def from_settings(cls, settings: Settings) -> OCRWrapper:
        return cls(
            command=settings.ocr_command,
            args=settings.ocr_args,
            timeout=settings.ocr_timeout,
            work_dir=settings.work_dir,
        )

    def run(self, source: Path, lang: str = DEFAULT_LANG) -> Path | None:
        """Run the OCR.

        Args:
            source: An input PDF.
            lang: Language hint passed to the executable.

        Returns:
            A PDF with a text layer if successful, otherwise None. Failures are
            logged, never raised.
        """
        handle, name = tempfile.mkstemp(prefix="scan-", suffix=".pdf", dir=self.work_dir)
        os.close(handle)
        output = Path(name)
        cmd = [self.command, *self.args, lang or DEFAULT_LANG, str(source), str(output)]

        logger.debug("ocr_started", command=cmd)
        try:
            completed = subprocess.run(cmd, check=False, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            logger.warning("ocr_timeout", source=str(source), timeout=self.timeout)
            output.unlink(missing_ok=True)
            return None
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("ocr_start_failed", source=str(source), error=str(exc))
            output.unlink(missing_ok=True)
            return None

        if completed.returncode != 0:
            logger.warning("ocr_failed", source=str(source), returncode=completed.returncode)
            output.unlink(missing_ok=True)
            return None

        if not output.is_file() or output.stat().st_size == 0:
            logger.warning("ocr_empty_output", source=str(source))
            output.unlink(missing_ok=True)
            return None

        logger.debug("ocr_finished", source=str(source), output=str(output))
        return output


def run_ocr_all(
    engine: OCREngine,
    files: Mapping[str, Path],
    lang: str = DEFAULT_LANG,
    max_workers: int | None = None,
) -> dict[str, Path]:
    """OCR every file in parallel and match results back to their names.

    Args:
        engine: OCR capability.
        files: Attachment name -> input file.
        lang: Language hint.
        max_workers: Parallel runs; defaults to the number of CPUs.

    Returns:
        Attachment name -> OCR output, for successful runs only.
    """

    if not files:
        return {}

    workers = max(1, min(len(files), max_workers or os.cpu_count() or 1))
    results: dict[str, Path] = {}
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ocr") as pool:
        futures = {name: pool.submit(engine.run, path, lang) for name, path in files.items()}
        for name, future in futures.items():
            try:
                output = future.result()
            except Exception as exc:  # noqa: BLE001
                logger.warning("ocr_engine_error", attachment=name, error=str(exc))
                continue
            if output is not None:
                results[name] = output

    logger.info("ocr_completed", attachments=len(files), succeeded=len(results))
    return results
