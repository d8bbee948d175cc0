"""
Artifact loading and vector search.

Artifacts are downloaded from the blob store, verified and decoded by
apps.indexing.artifacts.unpack_artifact, then kept in an LRU cache keyed
by their (org, tender, docHash) scope. Search is brute-force cosine
similarity unless the artifact carries a VectorSearchAdapter.
"""
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np
from django.conf import settings

from apps.docs.storage import BlobStore
from apps.indexing.artifacts import LoadedArtifact, VectorSearchAdapter, unpack_artifact
from apps.indexing.vectors import cosine_scores, rank_top_k
from apps.rag.cache import LRUCache, MAX_ARTIFACT_CACHE_BYTES, MAX_ARTIFACT_CACHE_ENTRIES

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 8
MAX_TOP_K = 24


def clamp_top_k(value, default: Optional[int] = None) -> int:
    """Coerce a requested k into 1..MAX_TOP_K."""
    fallback = default if default is not None else int(getattr(settings, 'RETRIEVAL_TOP_K', DEFAULT_TOP_K))
    try:
        k = int(value) if value is not None else fallback
    except (TypeError, ValueError):
        k = fallback
    return max(1, min(MAX_TOP_K, k))


@dataclass(frozen=True)
class VectorMatch:
    index: int
    score: float


def _dispose_artifact(artifact: LoadedArtifact, key: str) -> None:
    if artifact.adapter is not None:
        artifact.adapter.close()
        logger.debug(f"Closed search adapter of {key}")


class ArtifactLoader:
    """Loads, caches and searches packaged indexes."""

    def __init__(
        self,
        blobs: BlobStore,
        bucket: str,
        cache: Optional[LRUCache] = None,
        adapter_factory: Optional[Callable[[LoadedArtifact, bytes], Optional[VectorSearchAdapter]]] = None,
    ):
        self.blobs = blobs
        self.bucket = bucket
        self.cache = cache if cache is not None else LRUCache(
            max_entries=int(getattr(settings, 'MAX_ARTIFACT_CACHE_ENTRIES', MAX_ARTIFACT_CACHE_ENTRIES)),
            max_bytes=int(getattr(settings, 'MAX_ARTIFACT_CACHE_BYTES', MAX_ARTIFACT_CACHE_BYTES)),
            on_dispose=_dispose_artifact,
        )
        # Builds an approximate index from an artifact; none ships by default
        self.adapter_factory = adapter_factory

    def get_cached(self, scope: str) -> Optional[LoadedArtifact]:
        return self.cache.get(scope)

    def release(self, scope: str) -> bool:
        """Drop a cached artifact. Returns True if it was cached."""
        released = self.cache.delete(scope)
        if released:
            logger.info(f"Released cached artifact {scope}")
        return released

    def load(self, storage_key: str, scope: Optional[str] = None, use_cache: bool = True) -> LoadedArtifact:
        """
        Load an artifact, from cache when possible.

        `scope` (see apps.indexing.payloads.index_scope) is the cache key and
        names the docHash the artifact must carry. Without it the artifact is
        neither verified against a hash nor cached.

        Raises:
            ArtifactIntegrityError: If the artifact fails verification
            StorageError: If it cannot be downloaded
        """
        if scope and use_cache:
            cached = self.cache.get(scope)
            if cached is not None:
                return cached

        expected_doc_hash = scope.rsplit(':', 1)[-1] if scope else None
        data = self.blobs.get(self.bucket, storage_key)
        artifact = unpack_artifact(data, expected_doc_hash=expected_doc_hash)

        if self.adapter_factory is not None and artifact.manifest.get('hasHnswIndex'):
            artifact.adapter = self.adapter_factory(artifact, data)

        if scope:
            self.cache.set(scope, artifact, artifact.memory_bytes)
        logger.info(
            f"Loaded artifact {artifact.doc_hash[:12]}: {len(artifact.chunks)} chunks, "
            f"dims={artifact.dims}, {artifact.memory_bytes} bytes in memory"
        )
        return artifact

    def search(self, artifact: LoadedArtifact, query_vector, k: int) -> List[VectorMatch]:
        """
        Top-k chunks of `artifact` by cosine similarity to `query_vector`.

        Ordering is by descending score, then ascending chunk index, so
        results are deterministic and a larger k extends a smaller one.
        """
        top_k = clamp_top_k(k)
        query = np.asarray(query_vector, dtype=np.float32).ravel()

        if artifact.adapter is not None:
            return [VectorMatch(index=int(i), score=float(s)) for i, s in artifact.adapter.search(query, top_k)]

        scores = cosine_scores(artifact.embeddings, query)
        order = rank_top_k(scores, top_k)
        return [VectorMatch(index=int(i), score=float(scores[i])) for i in order]
