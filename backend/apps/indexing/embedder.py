"""
Embedding generation.

Texts are embedded in batches through an HTTP provider (OpenAI-compatible
or Ollama). When the provider is unreachable the embedder switches to a
deterministic hash-based fallback so indexing can still complete; fallback
vectors are only comparable with other fallback vectors, so the model name
is recorded alongside every embedding.
"""
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import httpx
import numpy as np
from django.conf import settings

from apps.indexing.errors import ProviderError
from apps.indexing.vectors import FLOAT32

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = 'text-embedding-3-small'
DEFAULT_EMBEDDING_DIMENSIONS = 1536

FALLBACK_EMBEDDING_MODEL = 'fallback/text-embedding-v1'
FALLBACK_EMBEDDING_DIMS = 256
BIGRAM_WEIGHT = 0.5

DEFAULT_BATCH_SIZE = 128
MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 512

_TOKEN_RE = re.compile(r'[a-z0-9]+')

# Error text that marks a transient network failure
TRANSIENT_MARKERS = (
    'terminated',
    'socket hang up',
    'enotfound',
    'timed out',
    'fetch failed',
    'econnreset',
    'etimedout',
    'connection reset',
    'name or service not known',
)


class EmbeddingError(ProviderError):
    """Raised when embedding generation fails."""
    pass


class EmbeddingMismatchError(EmbeddingError):
    """A query embedding is not comparable with the vectors of an index."""
    permanent = True


@dataclass
class EmbeddingResult:
    """Vectors for a list of texts, in input order."""
    vectors: np.ndarray  # (count, dimensions) float32
    model: str
    dimensions: int
    fallback: bool = False


# =============================================================================
# Deterministic fallback
# =============================================================================

def _tokenize(text: str) -> List[str]:
    return _TOKEN_RE.findall((text or '').lower())


def _digest(token: str, salt: int = 0) -> bytes:
    h = hashlib.sha256(token.encode('utf-8'))
    if salt:
        h.update(bytes([salt]))
    return h.digest()


def _index_and_sign(digest: bytes):
    index = int.from_bytes(digest[:4], 'big') % FALLBACK_EMBEDDING_DIMS
    sign = 1.0 if (digest[4] & 1) == 0 else -1.0
    return index, sign


def fallback_embedding(text: str) -> np.ndarray:
    """
    Hash unigrams and bigrams of `text` into a 256-dim unit vector.

    Each token adds +/-1 at a hashed index; each adjacent pair adds +/-0.5.
    Text without alphanumeric tokens maps to the zero vector.
    """
    vector = np.zeros(FALLBACK_EMBEDDING_DIMS, dtype=np.float64)
    tokens = _tokenize(text)

    for i, token in enumerate(tokens):
        index, sign = _index_and_sign(_digest(token))
        vector[index] += sign

        if i < len(tokens) - 1:
            bigram = f"{token}_{tokens[i + 1]}"
            index, sign = _index_and_sign(_digest(bigram, salt=1))
            vector[index] += sign * BIGRAM_WEIGHT

    norm = np.linalg.norm(vector)
    if norm > 0:
        vector /= norm
    return vector.astype(FLOAT32)


def fallback_embedding_batch(texts: Sequence[str]) -> EmbeddingResult:
    vectors = np.vstack([fallback_embedding(t) for t in texts]) if texts else np.zeros((0, FALLBACK_EMBEDDING_DIMS), dtype=FLOAT32)
    return EmbeddingResult(
        vectors=vectors,
        model=FALLBACK_EMBEDDING_MODEL,
        dimensions=FALLBACK_EMBEDDING_DIMS,
        fallback=True,
    )


def should_use_fallback(error: Exception) -> bool:
    """True for provider failures that look like the network, not the request."""
    if isinstance(error, httpx.TransportError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


# =============================================================================
# HTTP providers
# =============================================================================

class EmbeddingClient:
    """One call embeds one batch."""
    model: str = ''

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        raise NotImplementedError


class OpenAIEmbeddingClient(EmbeddingClient):
    """OpenAI-compatible /v1/embeddings endpoint."""

    def __init__(self, api_key: str, base_url: str = 'https://api.openai.com', model: str = DEFAULT_EMBEDDING_MODEL, timeout: float = 60.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.timeout = timeout

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(
                f"{self.base_url}/v1/embeddings",
                headers={'Authorization': f'Bearer {self.api_key}'},
                json={'model': self.model, 'input': texts},
            )
        if response.status_code != 200:
            raise EmbeddingError(
                f"Embedding API returned {response.status_code}: {response.text[:500]}"
            )
        data = response.json().get('data') or []
        if len(data) != len(texts):
            raise EmbeddingError(f"Embedding API returned {len(data)} vectors for {len(texts)} inputs")
        ordered = sorted(data, key=lambda item: item.get('index', 0))
        return [item['embedding'] for item in ordered]


class OllamaEmbeddingClient(EmbeddingClient):
    """Ollama /api/embed endpoint (accepts a list of inputs)."""

    def __init__(self, base_url: str, model: str = 'nomic-embed-text', timeout: float = 120.0):
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.timeout = timeout

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(
                f"{self.base_url}/api/embed",
                json={'model': self.model, 'input': texts},
            )
        if response.status_code != 200:
            raise EmbeddingError(
                f"Ollama API returned {response.status_code}: {response.text[:500]}"
            )
        embeddings = response.json().get('embeddings') or []
        if len(embeddings) != len(texts):
            raise EmbeddingError(f"Ollama returned {len(embeddings)} vectors for {len(texts)} inputs")
        return embeddings


def build_embedding_client() -> Optional[EmbeddingClient]:
    """Provider selected by EMBEDDING_PROVIDER; None means fallback only."""
    provider = getattr(settings, 'EMBEDDING_PROVIDER', 'fallback')

    if provider == 'openai':
        api_key = getattr(settings, 'OPENAI_API_KEY', '')
        if not api_key:
            logger.warning("EMBEDDING_PROVIDER=openai but OPENAI_API_KEY is empty; using fallback embeddings")
            return None
        return OpenAIEmbeddingClient(
            api_key=api_key,
            base_url=getattr(settings, 'OPENAI_BASE_URL', 'https://api.openai.com'),
            model=getattr(settings, 'EMBEDDING_MODEL', DEFAULT_EMBEDDING_MODEL),
            timeout=float(getattr(settings, 'EMBEDDING_TIMEOUT', 60)),
        )

    if provider == 'ollama':
        return OllamaEmbeddingClient(
            base_url=getattr(settings, 'OLLAMA_BASE_URL', 'http://ollama:11434'),
            model=getattr(settings, 'OLLAMA_EMBED_MODEL', 'nomic-embed-text'),
            timeout=float(getattr(settings, 'OLLAMA_EMBED_TIMEOUT', 120)),
        )

    return None


def clamp_batch_size(value) -> int:
    try:
        size = int(value)
    except (TypeError, ValueError):
        size = DEFAULT_BATCH_SIZE
    return max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, size))


class Embedder:
    """
    Batches texts through the configured provider.

    Once a call falls back, the rest of that embed() call uses the fallback
    too, so every vector in one result shares a model and dimension.
    """

    def __init__(self, client: Optional[EmbeddingClient] = None, batch_size: Optional[int] = None):
        self.client = client
        self.batch_size = clamp_batch_size(
            batch_size if batch_size is not None else getattr(settings, 'EMBED_BATCH_SIZE', DEFAULT_BATCH_SIZE)
        )

    @property
    def model(self) -> str:
        return self.client.model if self.client is not None else FALLBACK_EMBEDDING_MODEL

    def batches(self, texts: Sequence[str]) -> List[List[str]]:
        return [list(texts[i:i + self.batch_size]) for i in range(0, len(texts), self.batch_size)]

    def embed_batch(self, texts: List[str], force_fallback: bool = False) -> EmbeddingResult:
        """Embed one batch with a single provider call."""
        if force_fallback or self.client is None:
            return fallback_embedding_batch(texts)

        try:
            raw = self.client.embed_batch(texts)
        except EmbeddingError as e:
            if should_use_fallback(e):
                logger.warning(f"Embedding provider unavailable ({e}); using fallback embeddings")
                return fallback_embedding_batch(texts)
            raise
        except httpx.HTTPError as e:
            if should_use_fallback(e):
                logger.warning(f"Embedding provider unreachable ({e}); using fallback embeddings")
                return fallback_embedding_batch(texts)
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        vectors = np.asarray(raw, dtype=FLOAT32)
        if vectors.ndim != 2 or vectors.shape[0] != len(texts):
            raise EmbeddingError(f"Provider returned malformed vectors with shape {vectors.shape}")
        return EmbeddingResult(vectors=vectors, model=self.client.model, dimensions=int(vectors.shape[1]))

    def embed(
        self,
        texts: Sequence[str],
        on_batch: Optional[Callable[[int, int, EmbeddingResult], None]] = None,
    ) -> EmbeddingResult:
        """
        Embed all texts, one provider call per batch.

        Args:
            texts: Texts to embed
            on_batch: Optional callback(batches_done, total_batches, batch_result)

        Returns:
            EmbeddingResult with vectors concatenated in input order
        """
        batches = self.batches(texts)
        results: List[EmbeddingResult] = []
        use_fallback = False

        for i, batch in enumerate(batches):
            result = self.embed_batch(batch, force_fallback=use_fallback)
            if result.fallback and not use_fallback:
                use_fallback = True
                if results and not results[0].fallback:
                    # Earlier batches came from the provider; redo them so dimensions agree
                    logger.warning("Re-embedding earlier batches with the fallback model")
                    results = [fallback_embedding_batch(b) for b in batches[:i]]
            results.append(result)
            if on_batch:
                on_batch(i + 1, len(batches), result)

        if not results:
            dims = FALLBACK_EMBEDDING_DIMS if self.client is None else DEFAULT_EMBEDDING_DIMENSIONS
            return EmbeddingResult(vectors=np.zeros((0, dims), dtype=FLOAT32), model=self.model, dimensions=dims, fallback=self.client is None)

        vectors = np.vstack([r.vectors for r in results])
        first = results[0]
        logger.info(f"Embedded {len(texts)} texts in {len(batches)} batch(es) with {first.model}")
        return EmbeddingResult(vectors=vectors, model=first.model, dimensions=first.dimensions, fallback=first.fallback)

    def embed_query(
        self,
        text: str,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
    ) -> np.ndarray:
        """
        Embed a single query so it is comparable with vectors built by `model`.

        Raises:
            EmbeddingMismatchError: If the query would not land in the index's
                vector space (other model or other dimension count)
            EmbeddingError: If the provider is down and the index was not
                built with the fallback model
        """
        if model == FALLBACK_EMBEDDING_MODEL:
            vector = fallback_embedding(text)
        else:
            if model and model != self.model:
                raise EmbeddingMismatchError(
                    f"Index was embedded with {model} but queries embed with {self.model}"
                )
            result = self.embed_batch([text])
            if result.fallback and model:
                raise EmbeddingError(
                    f"Embedding provider unavailable; fallback vectors are not comparable with {model}"
                )
            vector = result.vectors[0]

        if dimensions and vector.size != dimensions:
            raise EmbeddingMismatchError(
                f"Query embedding has {vector.size} dimensions, index has {dimensions}"
            )
        return vector
