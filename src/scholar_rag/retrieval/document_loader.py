"""scholar_rag.retrieval.document_loader

Text extraction for uploaded documents.

Supported formats are plain text, Markdown, PDF (via ``pypdf``) and DOCX
(via ``python-docx``). Sources may be local paths or ``http(s)`` URLs, which are
fetched with ``requests``.

Functions
---------
normalise_file_type
    Map a MIME type or file extension onto a supported type label.
extract_text
    Extract plain text from raw file bytes.
read_source
    Read raw bytes from a local path or URL.
load_document_text
    Read a source and extract its text in one call.
"""
import io
from pathlib import Path
from urllib.parse import urlparse

import requests

SUPPORTED_FILE_TYPES = ("txt", "md", "pdf", "docx")

_MIME_TYPES = {
    "text/plain": "txt",
    "text/markdown": "md",
    "application/pdf": "pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
}

DEFAULT_CHARSET = "utf-8"


def normalise_file_type(file_type: str) -> str:
    """Map a MIME type, extension, or file name onto ``txt``/``md``/``pdf``/``docx``.

    Raises
    ------
    ValueError
        If the type is not supported.
    """
    raw = (file_type or "").strip().lower()
    if raw in _MIME_TYPES:
        return _MIME_TYPES[raw]
    ext = raw.rsplit(".", 1)[-1] if "." in raw else raw
    if ext == "markdown":
        ext = "md"
    if ext == "text":
        ext = "txt"
    if ext not in SUPPORTED_FILE_TYPES:
        raise ValueError(
            f"Unsupported file type: {file_type!r}. Supported: {list(SUPPORTED_FILE_TYPES)}"
        )
    return ext


def _pdf_text(data: bytes) -> str:
    from pypdf import PdfReader

    reader = PdfReader(io.BytesIO(data))
    return "\n".join((page.extract_text() or "") for page in reader.pages)


def _docx_text(data: bytes) -> str:
    from docx import Document as DocxDocument

    doc = DocxDocument(io.BytesIO(data))
    return "\n\n".join(p.text for p in doc.paragraphs if p.text and p.text.strip())


def extract_text(data: bytes, file_type: str) -> str:
    """Extract plain text from raw file bytes.

    Parameters
    ----------
    data : bytes
        File contents.
    file_type : str
        MIME type or extension of the file.

    Returns
    -------
    str
        Extracted text (possibly empty, e.g. for scanned PDFs).

    Raises
    ------
    ValueError
        If the file type is unsupported or the content cannot be parsed.
    """
    kind = normalise_file_type(file_type)
    if kind in ("txt", "md"):
        return data.decode(DEFAULT_CHARSET, errors="replace")
    try:
        if kind == "pdf":
            return _pdf_text(data)
        return _docx_text(data)
    except Exception as exc:
        raise ValueError(f"Failed to extract text from {kind.upper()}: {exc}") from exc


def read_source(source: str | Path, *, timeout: float = 30.0) -> bytes:
    """Read raw bytes from a local path or an ``http(s)`` URL."""
    src = str(source)
    if urlparse(src).scheme in ("http", "https"):
        response = requests.get(src, timeout=timeout)
        response.raise_for_status()
        return response.content
    return Path(src).expanduser().read_bytes()


def load_document_text(source: str | Path, file_type: str | None = None) -> tuple[str, str]:
    """Read ``source`` and extract its text.

    Parameters
    ----------
    source : str or Path
        Local path or URL.
    file_type : str or None, optional
        Explicit MIME type or extension. Inferred from ``source`` when omitted.

    Returns
    -------
    tuple[str, str]
        ``(text, file_type)`` with ``file_type`` normalised.
    """
    kind = normalise_file_type(file_type or urlparse(str(source)).path or str(source))
    return extract_text(read_source(source), kind), kind


__all__ = [
    "SUPPORTED_FILE_TYPES",
    "normalise_file_type",
    "extract_text",
    "read_source",
    "load_document_text",
]
