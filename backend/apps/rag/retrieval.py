"""
Retrieval service for RAG queries.

Two sources of passages:
- artifact matches from ArtifactLoader.search (the canonical path)
- section rows written by the incremental pipeline (deprecated; kept for
  documents ingested before packaged indexes existed)

Both produce Passage objects, which the answer composer turns into a
prompt context and citations.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence

import numpy as np

from apps.docs.models import Document
from apps.indexing.artifacts import LoadedArtifact
from apps.indexing.models import DocumentSection
from apps.indexing.vectors import DimensionMismatchError, as_matrix, cosine_scores, rank_top_k
from apps.rag.loader import VectorMatch, clamp_top_k

logger = logging.getLogger(__name__)

# Maximum snippet length for citations
SNIPPET_MAX_LENGTH = 350

# Section rows scanned per query on the incremental path
SECTION_SCAN_CAP = 3000


@dataclass
class Passage:
    """A ranked piece of document text used as answer context."""
    doc_id: str
    doc_name: str
    text: str
    score: float
    page_start: Optional[int] = None
    page_end: Optional[int] = None
    heading: Optional[str] = None
    chunk_id: str = ""

    @property
    def page_label(self) -> str:
        if self.page_start and self.page_end and self.page_start != self.page_end:
            return f"{self.page_start}-{self.page_end}"
        page = self.page_start or self.page_end
        return str(page) if page else '?'

    def to_citation(self) -> dict:
        """JSON citation for API responses (snippet only, not the full text)."""
        return {
            "docId": self.doc_id,
            "pageStart": self.page_start,
            "pageEnd": self.page_end,
            "page": self.page_start if self.page_start is not None else self.page_end,
            "docName": self.doc_name,
            "snippet": create_snippet(self.text),
            "score": round(self.score, 4),
        }


def create_snippet(text: str, max_length: int = SNIPPET_MAX_LENGTH) -> str:
    """
    Create a deterministic snippet from chunk text.

    - Takes first N characters
    - Adds ellipsis if truncated
    - Preserves word boundaries when possible
    """
    if len(text) <= max_length:
        return text

    truncated = text[:max_length]
    last_space = truncated.rfind(' ')

    if last_space > max_length * 0.7:  # Only break at space if reasonable
        truncated = truncated[:last_space]

    return truncated.rstrip() + "…"


def passages_from_matches(artifact: LoadedArtifact, matches: Iterable[VectorMatch]) -> List[Passage]:
    """Resolve artifact search matches to passages, in match order."""
    passages = []
    for match in matches:
        if match.index < 0 or match.index >= len(artifact.chunks):
            continue
        chunk = artifact.chunks[match.index]
        text = chunk.get('text') or ''
        if not text:
            continue
        meta = artifact.names.get(chunk.get('fileId'), {})
        page = chunk.get('page')
        passages.append(Passage(
            doc_id=chunk.get('fileId', artifact.doc_hash),
            doc_name=meta.get('name') or chunk.get('fileId', 'Document'),
            text=text,
            score=match.score,
            page_start=page,
            page_end=page,
            chunk_id=chunk.get('chunkId', ''),
        ))
    return passages


def _section_vector(section: DocumentSection) -> Optional[np.ndarray]:
    if section.embedding is None:
        return None
    vector = np.asarray(section.embedding, dtype=np.float32).ravel()
    if vector.size == 0:
        return None
    vector[~np.isfinite(vector)] = 0.0
    return vector


def rank_sections(
    sections: Sequence[DocumentSection],
    query_vector: Sequence[float],
    top_k: int,
    doc_name: str = 'Document',
) -> List[Passage]:
    """
    Score sections against a query and keep the best per (document, page).

    Sections without an embedding are ignored. Ordering is by descending
    cosine score with ties in input order.

    Raises:
        DimensionMismatchError: If section vectors differ in length from
            each other or from the query
    """
    usable = []
    vectors = []
    for section in sections:
        vector = _section_vector(section)
        if vector is None:
            continue
        usable.append(section)
        vectors.append(vector)

    if not usable:
        return []

    sizes = sorted({v.size for v in vectors})
    if len(sizes) > 1:
        raise DimensionMismatchError(f"Sections mix embedding sizes {sizes}")
    scores = cosine_scores(as_matrix(vectors), query_vector)
    order = rank_top_k(scores, len(usable))

    limit = clamp_top_k(top_k)
    seen = set()
    passages = []
    for i in order:
        section = usable[int(i)]
        key = (section.document_id, section.page_start)
        if key in seen:
            continue
        seen.add(key)
        passages.append(Passage(
            doc_id=str(section.document_id),
            doc_name=doc_name,
            text=section.text or '',
            score=float(scores[i]),
            page_start=section.page_start,
            page_end=section.page_end,
            heading=section.heading,
            chunk_id=str(section.pk),
        ))
        if len(passages) >= limit:
            break
    return passages


def retrieve_sections(
    document: Document,
    query_vector: Sequence[float],
    top_k: int,
    scan_cap: int = SECTION_SCAN_CAP,
) -> List[Passage]:
    """
    Deprecated incremental-path retrieval over a document's section rows.

    Args:
        document: The document to search
        query_vector: Embedding of the question
        top_k: Number of passages wanted (clamped to 1..24)
        scan_cap: Maximum section rows loaded

    Returns:
        Passages ordered by descending similarity
    """
    sections = list(
        DocumentSection.objects
        .filter(document=document)
        .order_by('section_index')[:max(1, scan_cap)]
    )
    passages = rank_sections(
        sections, query_vector, top_k,
        doc_name=document.title or document.filename,
    )

    logger.info(
        f"Retrieved {len(passages)} sections for document {document.pk} "
        f"(scanned {len(sections)}, requested top_k={top_k})"
    )
    return passages
