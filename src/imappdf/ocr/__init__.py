"""OCR invocation.

This package wraps the external OCR executable that adds a text layer to
scanned PDFs.
"""

from .wrapper import DEFAULT_LANG, OCREngine, OCRWrapper, run_ocr_all

__all__ = ["DEFAULT_LANG", "OCREngine", "OCRWrapper", "run_ocr_all"]
