"""Custom exceptions for imappdf."""


class ImapPdfError(Exception):
    """Base exception for all imappdf errors."""


class ConfigurationError(ImapPdfError):
    """Exception raised for configuration related errors."""


class MailboxAccessError(ImapPdfError):
    """Exception raised when the mailbox or a message cannot be read or flagged."""


class DispatchError(ImapPdfError):
    """Exception raised when the outbound mail cannot be composed or sent."""
