"""Unit tests for configuration module."""

from pathlib import Path

import pytest

from imappdf.config import (
    Settings,
    get_settings,
    load_settings,
    parse_properties,
    properties_to_fields,
)
from imappdf.exceptions import ConfigurationError


class TestSettings:
    """Test suite for Settings class."""

    def test_default_settings(self) -> None:
        """Test that default settings are properly initialized."""
        settings = Settings()

        assert settings.ocr_lang == "deu+eng"
        assert settings.ocr_command == "ocrmypdf"
        assert settings.ocr_args == ["-c", "-d", "-l"]
        assert settings.processing_attachments == "all"
        assert settings.processing_fallback == "sender"
        assert settings.processing_require_unseen is False
        assert settings.delete_after_processing is True
        assert settings.watch_reconnect_seconds == 1800
        assert settings.log_level == "INFO"
        assert settings.forwards == {}

    def test_settings_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test loading settings from environment variables."""
        monkeypatch.setenv("IMAPPDF_MAIL_IMAP_USER", "scan@example.com")
        monkeypatch.setenv("IMAPPDF_OCR_LANG", "eng")
        monkeypatch.setenv("IMAPPDF_LOG_LEVEL", "debug")

        settings = Settings()

        assert settings.mail_imap_user == "scan@example.com"
        assert settings.ocr_lang == "eng"
        assert settings.log_level == "DEBUG"

    def test_settings_are_immutable(self) -> None:
        settings = Settings()

        with pytest.raises(Exception):  # Pydantic ValidationError
            settings.ocr_lang = "eng"  # type: ignore[misc]

    def test_invalid_policy_rejected(self) -> None:
        with pytest.raises(Exception):  # Pydantic ValidationError
            Settings(processing_attachments="some")

    def test_forward_address_is_case_insensitive(self) -> None:
        settings = Settings(forwards={"Scan@Example.com": "archive@example.com"})

        assert settings.forward_address("scan@example.com") == "archive@example.com"
        assert settings.forward_address("SCAN@EXAMPLE.COM") == "archive@example.com"
        assert settings.forward_address("other@example.com") is None


class TestProperties:
    """Test suite for the .properties reader."""

    def test_parse_separators_and_comments(self) -> None:
        text = "\n".join(
            [
                "# comment",
                "! also a comment",
                "",
                "mail.imap.user=scan@example.com",
                "mail.imap.pass : s3cret",
                "ocr.lang deu",
                "  indented.key = value with spaces  ",
            ]
        )

        props = parse_properties(text)

        assert props == {
            "mail.imap.user": "scan@example.com",
            "mail.imap.pass": "s3cret",
            "ocr.lang": "deu",
            "indented.key": "value with spaces  ",
        }

    def test_parse_continuation_and_escapes(self) -> None:
        text = "ocr.flags=-c \\\n    -d -l\nkey\\:with\\=sep=a\\tb\n"

        props = parse_properties(text)

        assert props["ocr.flags"] == "-c -d -l"
        assert props["key:with=sep"] == "a\tb"

    def test_forward_keys_are_collected(self) -> None:
        fields = properties_to_fields(
            {
                "fwd.scan@example.com": "archive@example.com",
                "fwd.default": "inbox@example.com",
                "deleteAfterProcessing": "false",
                "mail.smtp.starttls.enable": "false",
            }
        )

        assert fields == {
            "forwards": {"scan@example.com": "archive@example.com"},
            "fwd_default": "inbox@example.com",
            "delete_after_processing": "false",
            "mail_smtp_starttls_enable": "false",
        }

    def test_load_settings_from_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("IMAPPDF_OCR_LANG", "eng")
        config = tmp_path / "config.properties"
        config.write_text(
            "\n".join(
                [
                    "mail.imap.host=imap.example.com",
                    "mail.imap.user=scan@example.com",
                    "mail.smtp.from=Scanner <scan@example.com>",
                    "ocr.lang=deu+eng",
                    "deleteAfterProcessing=false",
                    "fwd.scan@example.com=archive@example.com",
                ]
            ),
            encoding="utf-8",
        )

        settings = load_settings(config)

        assert settings.mail_imap_host == "imap.example.com"
        assert settings.mail_smtp_from == "Scanner <scan@example.com>"
        # File values win over the environment.
        assert settings.ocr_lang == "deu+eng"
        assert settings.delete_after_processing is False
        assert settings.forward_address("scan@example.com") == "archive@example.com"

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            load_settings(tmp_path / "missing.properties")

    def test_invalid_value_raises(self, tmp_path: Path) -> None:
        config = tmp_path / "config.properties"
        config.write_text("mail.imap.port=not-a-number\n", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            load_settings(config)


def test_get_settings_returns_cached_instance() -> None:
    """Test that get_settings returns the same cached instance."""
    get_settings.cache_clear()

    settings1 = get_settings()
    settings2 = get_settings()

    assert settings1 is settings2

    # Clean up
    get_settings.cache_clear()
