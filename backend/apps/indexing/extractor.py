"""
Text extraction from various document formats.

Supports:
- .pdf: per-page text using PyMuPDF
- .txt / .md: UTF-8 text, one page (form feeds split pages)
- .docx: paragraph text using python-docx, one page

Every page is whitespace-normalized. Pages without text are kept as empty
strings so page numbers stay stable for citations.
"""
import gzip
import hashlib
import io
import json
import logging
import re
from pathlib import PurePosixPath
from typing import Dict, Iterable, List, Optional

import docx
import fitz  # PyMuPDF

from apps.indexing.chunker import normalize_whitespace
from apps.indexing.errors import InputError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {'.pdf', '.txt', '.md', '.markdown', '.docx'}

CONTENT_TYPES = {
    '.pdf': 'application/pdf',
    '.txt': 'text/plain',
    '.md': 'text/markdown',
    '.markdown': 'text/markdown',
    '.docx': 'application/vnd.openxmlformats-officedocument.wordprocessingml.document',
}

_PAGE_OBJECT_RE = re.compile(rb'/Type\s*/Page(?!s)')
_TEXT_OPERATOR_RE = re.compile(rb'\bBT\b')


class ExtractionError(InputError):
    """Raised when text extraction fails."""
    pass


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_extension(filename: Optional[str]) -> str:
    return PurePosixPath(filename or '').suffix.lower()


def is_supported(filename: str) -> bool:
    return file_extension(filename) in SUPPORTED_EXTENSIONS


def guess_content_type(filename: str) -> str:
    return CONTENT_TYPES.get(file_extension(filename), 'application/octet-stream')


def inspect_pdf(data: bytes) -> Dict:
    """
    Cheap look at a PDF without parsing it.

    Returns:
        {'pages': count of /Type /Page objects, 'hasText': a BT operator was seen}
    """
    return {
        'pages': len(_PAGE_OBJECT_RE.findall(data)),
        'hasText': bool(_TEXT_OPERATOR_RE.search(data)),
    }


def _decode_text(data: bytes, filename: str) -> str:
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError:
        logger.warning(f"UTF-8 decode failed for {filename}, using errors='ignore'")
        return data.decode('utf-8', errors='ignore')


def extract_pages_from_pdf(data: bytes) -> List[str]:
    """
    Extract text page by page from a PDF using PyMuPDF.

    Scanned, image-only pages come back empty; there is no OCR.
    """
    try:
        with fitz.open(stream=data, filetype='pdf') as doc:
            return [page.get_text() for page in doc]
    except (RuntimeError, ValueError) as e:
        raise ExtractionError(f"Failed to extract text from PDF: {e}") from e


def extract_pages_from_text(data: bytes, filename: str) -> List[str]:
    return _decode_text(data, filename).split('\f')


def extract_pages_from_docx(data: bytes) -> List[str]:
    try:
        document = docx.Document(io.BytesIO(data))
    except Exception as e:
        raise ExtractionError(f"Failed to open DOCX: {e}") from e
    return ['\n'.join(p.text for p in document.paragraphs)]


def extract_pages(data: bytes, filename: str, content_type: Optional[str] = None) -> List[str]:
    """
    Extract normalized per-page text from a document.

    Args:
        data: Raw file bytes
        filename: Name used to pick the format (by extension)
        content_type: Optional MIME type hint

    Returns:
        One string per page, possibly empty

    Raises:
        ExtractionError: If the payload is corrupt or the format is unsupported
    """
    suffix = file_extension(filename)
    logger.info(f"Extracting text from {filename} (suffix={suffix}, content_type={content_type})")

    if suffix == '.pdf' or content_type == 'application/pdf':
        raw_pages = extract_pages_from_pdf(data)
    elif suffix in ('.txt', '.md', '.markdown') or content_type in ('text/plain', 'text/markdown', 'text/x-markdown'):
        raw_pages = extract_pages_from_text(data, filename)
    elif suffix == '.docx':
        raw_pages = extract_pages_from_docx(data)
    else:
        raise ExtractionError(f"Unsupported file format: {suffix or content_type or 'unknown'}")

    pages = [normalize_whitespace(page) for page in raw_pages]
    if not any(pages):
        logger.warning(f"No text extracted from {filename} (may be image-based)")
    return pages


# =============================================================================
# Compressed JSON-lines records
# =============================================================================

def encode_jsonl_gz(records: Iterable[Dict]) -> bytes:
    lines = '\n'.join(json.dumps(record, ensure_ascii=False) for record in records)
    return gzip.compress(lines.encode('utf-8'))


def decode_jsonl_gz(data: bytes) -> List[Dict]:
    """
    Parse a gzip JSON-lines blob.

    Raises:
        ValueError: If the blob is not gzip or a line is not JSON
    """
    try:
        text = gzip.decompress(data).decode('utf-8')
    except (OSError, EOFError) as e:
        raise ValueError(f"Not a gzip stream: {e}") from e
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def encode_pages(pages: List[str]) -> bytes:
    """Extracted pages as gzip JSONL of {page, text} (1-based)."""
    return encode_jsonl_gz({'page': i, 'text': text} for i, text in enumerate(pages, start=1))


def decode_pages(data: bytes) -> List[str]:
    records = sorted(decode_jsonl_gz(data), key=lambda r: int(r['page']))
    return [r.get('text') or '' for r in records]
