"""Command-line interface for imappdf.

This module provides the main entry point for the CLI application.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import shutil
import sys
from pathlib import Path

import structlog

from imappdf import __version__
from imappdf.agent import MailboxObserver
from imappdf.config import Settings, get_settings
from imappdf.exceptions import ConfigurationError, MailboxAccessError
from imappdf.ocr import OCRWrapper

logger = structlog.get_logger()

DEFAULT_CONFIG_PATH = Path("conf/config.properties")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="imappdf",
        description="Forward OCR'd PDF attachments from an IMAP mailbox",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=(
            "Path to the .properties configuration file "
            f"(default: $IMAPPDF_CONFIG, else {DEFAULT_CONFIG_PATH} if present)"
        ),
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("watch", help="Handle the mailbox and keep watching it for new mail")
    subparsers.add_parser("run-once", help="Handle the current mailbox contents once and exit")

    ocr_parser = subparsers.add_parser("ocr", help="Run the configured OCR on a local PDF")
    ocr_parser.add_argument("input", type=Path, help="PDF to process")
    ocr_parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Where to write the result (default: <input>-ocr.pdf)",
    )
    ocr_parser.add_argument("--lang", default=None, help="Language hint (default: settings ocr_lang)")

    return parser


def _resolve_config_path(arg: Path | None) -> Path | None:
    if arg is not None:
        return arg
    env_path = os.environ.get("IMAPPDF_CONFIG")
    if env_path:
        return Path(env_path)
    if DEFAULT_CONFIG_PATH.is_file():
        return DEFAULT_CONFIG_PATH
    return None


def configure_logging(level: str) -> None:
    # stdout carries command output (run-once results, ocr target path).
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level, logging.INFO)),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


def _cmd_watch(settings: Settings) -> int:
    observer = MailboxObserver(settings)
    asyncio.run(observer.run_forever())
    return 0


def _cmd_run_once(settings: Settings) -> int:
    observer = MailboxObserver(settings, max_results=None)
    asyncio.run(observer.run_cycle(watch=False))
    for result in observer.results:
        recipient = result.recipient or "-"
        print(f"{result.uid}\t{result.outcome.value}\t{recipient}\t{', '.join(result.attachments)}")
    return 0


def _cmd_ocr(settings: Settings, args: argparse.Namespace) -> int:
    source: Path = args.input
    if not source.is_file():
        logger.error("ocr_input_missing", path=str(source))
        return 1

    target: Path = args.output or source.with_name(f"{source.stem}-ocr.pdf")
    output = OCRWrapper.from_settings(settings).run(source, args.lang or settings.ocr_lang)
    if output is None:
        return 1

    shutil.move(str(output), target)
    print(target)
    return 0


def main(args: list[str] | None = None) -> int:
    """Main entry point for the imappdf CLI.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if args is None:
        args = sys.argv[1:]

    parser = _build_parser()
    parsed = parser.parse_args(args)

    try:
        settings = get_settings(_resolve_config_path(parsed.config))
    except ConfigurationError as exc:
        configure_logging("INFO")
        logger.error("configuration_failed", error=str(exc))
        return 1

    configure_logging(settings.log_level)
    logger.info("imappdf_started", version=__version__, command=parsed.command)

    try:
        if parsed.command == "watch":
            return _cmd_watch(settings)
        if parsed.command == "run-once":
            return _cmd_run_once(settings)
        if parsed.command == "ocr":
            return _cmd_ocr(settings, parsed)
    except KeyboardInterrupt:
        logger.info("interrupted_exiting")
        return 0
    except MailboxAccessError as exc:
        logger.error("mailbox_unavailable", error=str(exc))
        return 1

    logger.error("unknown_command", command=parsed.command)
    return 2


if __name__ == "__main__":
    sys.exit(main())
