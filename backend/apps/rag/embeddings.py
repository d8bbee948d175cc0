"""
Query-side embedding for RAG.

Questions must be embedded with the same model as the index they are
searched against, so the model recorded on the artifact (or the section
rows) is passed through to the embedder.
"""
import logging
import re
from typing import Optional

import numpy as np

from apps.indexing.embedder import Embedder

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 2000


class QueryValidationError(Exception):
    """Raised when query validation fails."""
    pass


def normalize_query(query: str) -> str:
    """
    Normalize a user query for embedding.

    - Strip leading/trailing whitespace
    - Collapse multiple whitespace to single space
    - Raise if empty or too long

    Raises:
        QueryValidationError: If query is empty after normalization
    """
    if not query or not isinstance(query, str):
        raise QueryValidationError("Query cannot be empty")

    normalized = re.sub(r'\s+', ' ', query.strip())

    if not normalized:
        raise QueryValidationError("Query cannot be empty")

    if len(normalized) > MAX_QUERY_LENGTH:
        raise QueryValidationError(f"Query too long (max {MAX_QUERY_LENGTH} characters)")

    return normalized


def embed_query(
    embedder: Embedder,
    query: str,
    model: Optional[str] = None,
    dimensions: Optional[int] = None,
) -> np.ndarray:
    """
    Embed a normalized question for search against an index built with
    `model` holding `dimensions`-long vectors.

    Raises:
        EmbeddingMismatchError: If the query cannot match the index's vectors
        EmbeddingError: If the provider fails and no fallback applies
    """
    vector = embedder.embed_query(query, model=model, dimensions=dimensions)
    logger.debug(f"Generated query embedding with {vector.size} dimensions (model={model or embedder.model})")
    return vector
