"""
Deterministic text chunking for document indexing.

Chunking is designed to be:
- Deterministic: Same input always produces same chunks
- Idempotent: Re-running produces identical chunk IDs
- Page-bounded: A chunk never spans two pages, so citations stay exact
"""
import re
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Default chunking parameters
DEFAULT_CHUNK_SIZE = 1024  # characters
DEFAULT_CHUNK_OVERLAP = 160  # characters of overlap between chunks

_WHITESPACE_RE = re.compile(r'\s+')


@dataclass
class ChunkRecord:
    """A chunk of one page with its position in the document."""
    index: int
    doc_hash: str
    page_start: int
    page_end: int
    text: str
    heading: Optional[str] = None

    @property
    def chunk_id(self) -> str:
        return f"{self.doc_hash}:{self.index}"

    def to_dict(self) -> Dict:
        return {
            'id': self.chunk_id,
            'pageStart': self.page_start,
            'pageEnd': self.page_end,
            'heading': self.heading,
            'text': self.text,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'ChunkRecord':
        doc_hash, _, index = data['id'].rpartition(':')
        return cls(
            index=int(index),
            doc_hash=doc_hash,
            page_start=int(data['pageStart']),
            page_end=int(data['pageEnd']),
            text=data['text'],
            heading=data.get('heading'),
        )


def normalize_whitespace(text: str) -> str:
    """
    Collapse every whitespace run to a single space and strip the ends.

    Args:
        text: Raw page text

    Returns:
        Normalized text (possibly empty)
    """
    if not text:
        return ''
    return _WHITESPACE_RE.sub(' ', text).strip()


def chunk_spans(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> List[Tuple[int, int]]:
    """
    (start, end) offsets of fixed-size overlapping windows over `text`.

    Each window starts `overlap` characters before the previous one ended,
    but always at least one character after the previous start, so the
    loop makes progress even when overlap >= chunk_size. The final partial
    window is always emitted.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0:
        raise ValueError(f"overlap must be non-negative, got {overlap}")

    length = len(text)
    spans: List[Tuple[int, int]] = []
    start = 0

    while start < length:
        end = min(length, start + chunk_size)
        spans.append((start, end))
        if end == length:
            break
        start = max(end - overlap, start + 1)

    return spans


def chunk_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> List[str]:
    """
    Split text into fixed-size overlapping windows.

    Args:
        text: Normalized text of a single page
        chunk_size: Window length in characters
        overlap: Characters shared by consecutive windows

    Returns:
        List of window strings, in order
    """
    return [text[start:end] for start, end in chunk_spans(text, chunk_size, overlap)]


def chunk_pages(
    pages: Iterable[str],
    doc_hash: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> List[ChunkRecord]:
    """
    Chunk a document page by page.

    Pages are normalized first; empty pages produce no chunks but still
    count towards page numbering (1-based).
    """
    records: List[ChunkRecord] = []

    for page_number, raw in enumerate(pages, start=1):
        page_text = normalize_whitespace(raw)
        if not page_text:
            continue

        for window in chunk_text(page_text, chunk_size, overlap):
            records.append(ChunkRecord(
                index=len(records),
                doc_hash=doc_hash,
                page_start=page_number,
                page_end=page_number,
                text=window,
            ))

    logger.debug(f"Chunked {doc_hash[:12]} into {len(records)} chunks")
    return records


def estimate_tokens(text: str) -> int:
    """Rough token estimate (4 characters per token, rounded up)."""
    return -(-len(text) // 4)
