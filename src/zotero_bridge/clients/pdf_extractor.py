"""
PDF text extraction.

Zotero's own full-text index is the preferred source of attachment text;
this module is the fallback used when an attachment was never indexed.
"""

import logging
from pathlib import Path

from pdfminer.high_level import extract_text

logger = logging.getLogger(__name__)

# Suppress noisy PDF warnings
logging.getLogger("pdfminer").setLevel(logging.ERROR)


def extract_pdf_text(file_path: str | Path, max_pages: int | None = None) -> str | None:
    """
    Extract text from a PDF file.

    Never raises: a missing file, an unreadable PDF, or a PDF without a
    text layer all yield None.

    Args:
        file_path: Path to the PDF
        max_pages: Stop after this many pages (None for all)

    Returns:
        Extracted text, or None
    """
    path = Path(file_path)
    if not path.is_file():
        return None

    try:
        text = extract_text(str(path), maxpages=max_pages or 0)
    except Exception as e:
        logger.debug(f"PDF extraction failed for {path}: {e}")
        return None

    text = (text or "").strip()
    return text or None
