"""Configuration management for imappdf.

This module handles application configuration using Pydantic settings.
Values come from a Java-style ``.properties`` file (the format the relay has
always been configured with), environment variables with the ``IMAPPDF_``
prefix, or a ``.env`` file. Values read from the properties file win over the
environment.
"""

from __future__ import annotations

import re
import shlex
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from imappdf.exceptions import ConfigurationError

FORWARD_PREFIX = "fwd."
FORWARD_DEFAULT_KEY = "fwd.default"

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the IMAPPDF_ prefix (e.g., IMAPPDF_MAIL_IMAP_USER).
    """

    model_config = SettingsConfigDict(
        env_prefix="IMAPPDF_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    # IMAP Configuration
    mail_imap_host: str = Field(default="localhost", description="IMAP server host")
    mail_imap_port: int = Field(default=993, description="IMAP server port")
    mail_imap_ssl_enable: bool = Field(default=True, description="Use IMAP over TLS")
    mail_imap_user: str = Field(default="", description="IMAP login user")
    mail_imap_pass: str = Field(default="", description="IMAP login password")
    mail_imap_folder: str = Field(default="INBOX", description="Folder to watch")
    mail_imap_expunge: bool = Field(
        default=True,
        description="Expunge messages flagged deleted when the folder is closed",
    )

    # SMTP Configuration
    mail_smtp_host: str = Field(default="localhost", description="SMTP server host")
    mail_smtp_port: int = Field(default=587, description="SMTP server port")
    mail_smtp_ssl_enable: bool = Field(default=False, description="Use implicit TLS (SMTPS)")
    mail_smtp_starttls_enable: bool = Field(default=True, description="Upgrade with STARTTLS")
    mail_smtp_user: str = Field(default="", description="SMTP login user")
    mail_smtp_pass: str = Field(default="", description="SMTP login password")
    mail_smtp_from: str = Field(default="", description="Sender address of forwarded mail")

    # OCR Configuration
    ocr_lang: str = Field(default="deu+eng", description="Language hint passed to OCR")
    ocr_command: str = Field(default="ocrmypdf", description="OCR executable")
    ocr_flags: str = Field(
        default="-c -d -l",
        description="Arguments placed between the executable and the language",
    )
    ocr_timeout: float | None = Field(
        default=None,
        description="Seconds to wait for a single OCR run (default: no limit)",
    )
    ocr_max_workers: int | None = Field(
        default=None,
        description="Parallel OCR runs per message (default: number of CPUs)",
    )

    # Processing policies
    processing_attachments: Literal["all", "first"] = Field(
        default="all",
        description="Collect every PDF attachment or stop after the first one",
    )
    processing_fallback: Literal["sender", "default"] = Field(
        default="sender",
        description="Recipient when no fwd.<address> override matches",
    )
    processing_require_unseen: bool = Field(
        default=False,
        description="Skip messages flagged \\Seen and mark accepted ones seen",
    )
    processing_max_parts: int = Field(
        default=500,
        gt=0,
        description="Maximum MIME parts inspected per message",
    )
    delete_after_processing: bool = Field(
        default=True,
        description="Flag messages \\Deleted after they were handled",
    )
    work_dir: Path | None = Field(
        default=None,
        description="Directory for temporary PDF files (default: system temp dir)",
    )

    # Watch loop
    watch_reconnect_seconds: float = Field(
        default=1800.0,
        gt=0,
        description="Seconds a mailbox session is held before reconnecting",
    )
    watch_idle_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Length of a single IDLE wait",
    )

    # Forwarding overrides
    forwards: dict[str, str] = Field(
        default_factory=dict,
        description="Recipient address -> forwarding address (fwd.<address> keys)",
    )
    fwd_default: str | None = Field(
        default=None,
        description="Forwarding address used by the 'default' fallback policy",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    @field_validator("ocr_timeout", "ocr_max_workers", "fwd_default", "work_dir", mode="before")
    @classmethod
    def _empty_str_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and value.strip() == "":
            return None
        return value

    @field_validator("forwards", mode="after")
    @classmethod
    def _normalize_forwards(cls, value: dict[str, str]) -> dict[str, str]:
        return {key.strip().lower(): target.strip() for key, target in value.items()}

    @field_validator("log_level", mode="after")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def ocr_args(self) -> list[str]:
        """Arguments placed between the OCR executable and the language."""
        return shlex.split(self.ocr_flags)

    def forward_address(self, address: str) -> str | None:
        """Return the configured ``fwd.<address>`` override, if any."""
        return self.forwards.get(address.strip().lower())


def parse_properties(text: str) -> dict[str, str]:
    """Parse Java ``.properties`` content into a flat dict.

    Supports ``key=value``, ``key: value`` and ``key value`` separators,
    ``#``/``!`` comments and backslash line continuations.
    """

    result: dict[str, str] = {}
    logical = ""
    for raw_line in text.splitlines():
        line = raw_line.lstrip()
        if not logical and (not line or line[0] in "#!"):
            continue

        # An odd number of trailing backslashes continues the line.
        trailing = len(line) - len(line.rstrip("\\"))
        if trailing % 2 == 1:
            logical += line[:-1]
            continue

        logical += line
        key, value = _split_property(logical)
        result[key] = value
        logical = ""

    if logical:
        key, value = _split_property(logical)
        result[key] = value
    return result


def _split_property(line: str) -> tuple[str, str]:
    key_chars: list[str] = []
    i = 0
    while i < len(line):
        char = line[i]
        if char == "\\" and i + 1 < len(line):
            key_chars.append(line[i + 1])
            i += 2
            continue
        if char in "=: \t":
            break
        key_chars.append(char)
        i += 1

    rest = line[i:].lstrip(" \t")
    if rest[:1] in ("=", ":"):
        rest = rest[1:].lstrip(" \t")
    return "".join(key_chars), _unescape(rest)


def _unescape(value: str) -> str:
    escapes = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}
    out: list[str] = []
    i = 0
    while i < len(value):
        char = value[i]
        if char == "\\" and i + 1 < len(value):
            nxt = value[i + 1]
            out.append(escapes.get(nxt, nxt))
            i += 2
            continue
        out.append(char)
        i += 1
    return "".join(out)


def properties_to_fields(properties: dict[str, str]) -> dict[str, Any]:
    """Map dotted property keys onto Settings field names.

    ``mail.imap.user`` becomes ``mail_imap_user``, ``deleteAfterProcessing``
    becomes ``delete_after_processing``. ``fwd.<address>`` keys are collected
    into ``forwards``; ``fwd.default`` becomes ``fwd_default``.
    """

    fields: dict[str, Any] = {}
    forwards: dict[str, str] = {}
    for key, value in properties.items():
        if key == FORWARD_DEFAULT_KEY:
            fields["fwd_default"] = value
            continue
        if key.startswith(FORWARD_PREFIX):
            forwards[key[len(FORWARD_PREFIX) :]] = value
            continue
        name = _CAMEL_BOUNDARY.sub("_", key).replace(".", "_").replace("-", "_").lower()
        fields[name] = value

    if forwards:
        fields["forwards"] = forwards
    return fields


def load_settings(config_file: Path | None = None) -> Settings:
    """Build settings from an optional properties file plus the environment.

    Raises:
        ConfigurationError: If the file cannot be read or holds invalid values.
    """

    values: dict[str, Any] = {}
    if config_file is not None:
        try:
            text = Path(config_file).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(f"Cannot read configuration file {config_file}: {exc}") from exc
        values = properties_to_fields(parse_properties(text))

    try:
        return Settings(**values)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


@lru_cache
def get_settings(config_file: Path | None = None) -> Settings:
    """Get cached application settings.

    Args:
        config_file: Optional path to a ``.properties`` file.

    Returns:
        Settings: Application settings instance.
    """
    return load_settings(config_file)
