"""scholar_rag.retrieval.document_preprocessor

Text normalisation applied to extracted document text before chunking.

Functions
---------
clean_text
    Collapse whitespace, drop page markers, and squash repeated punctuation.
"""

import re

_WHITESPACE_RE = re.compile(r"\s+")
_PAGE_MARKER_RE = re.compile(r"\bPage \d+\b", re.IGNORECASE)
_REPEATED_PUNCT_RE = re.compile(r"([^\w\s])\1{3,}")


def clean_text(text: str) -> str:
    """Normalise extracted document text.

    The following transformations are applied in order:

    - page markers such as ``"Page 12"`` are removed
    - every run of whitespace (including newlines) becomes a single space
    - a punctuation character repeated four or more times (e.g. dot leaders
      in a table of contents) is collapsed to one occurrence
    - leading and trailing whitespace is stripped

    Parameters
    ----------
    text : str
        Raw extracted text.

    Returns
    -------
    str
        Cleaned text. Empty or whitespace-only input yields ``""``.
    """
    if not text:
        return ""
    out = _PAGE_MARKER_RE.sub("", text)
    out = _WHITESPACE_RE.sub(" ", out)
    out = _REPEATED_PUNCT_RE.sub(r"\1", out)
    return out.strip()


__all__ = ["clean_text"]
