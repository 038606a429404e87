"""imappdf - forward OCR'd PDF attachments from an IMAP mailbox.

This package watches an IMAP folder, runs every PDF attachment of incoming
mail through an external OCR tool, and forwards the result by SMTP.
"""

__version__ = "0.1.0"

from imappdf.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
