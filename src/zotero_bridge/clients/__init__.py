"""External collaborators used by the backends."""

from .pdf_extractor import extract_pdf_text

__all__ = ["extract_pdf_text"]
