"""
Vector helpers: half-precision packing and cosine similarity.

Artifacts store embeddings as little-endian IEEE-754 float16, row-major,
2 bytes per element. Unpacking yields float32.
"""
from typing import Sequence, Union

import numpy as np

from apps.indexing.errors import ConsistencyError

FLOAT16_LE = np.dtype('<f2')
FLOAT32 = np.dtype(np.float32)


class ArtifactIntegrityError(ConsistencyError):
    """Packaged index data is malformed or does not match its manifest."""
    pass


class DimensionMismatchError(ConsistencyError):
    """A query vector and the stored vectors have different dimensions."""
    pass


def as_matrix(vectors: Union[np.ndarray, Sequence[Sequence[float]]]) -> np.ndarray:
    """Stack vectors into a 2-D float32 array."""
    matrix = np.asarray(vectors, dtype=FLOAT32)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    return matrix


def pack_float16(vectors) -> bytes:
    """
    Pack vectors to little-endian float16 bytes.

    Values outside the float16 range become +/-inf; NaN stays NaN.
    """
    matrix = np.asarray(vectors, dtype=FLOAT32)
    with np.errstate(over='ignore'):
        return matrix.astype(FLOAT16_LE).tobytes()


def unpack_float16(buffer: bytes, dimensions: int) -> np.ndarray:
    """
    Decode a float16 buffer into a (count, dimensions) float32 matrix.

    Raises:
        ArtifactIntegrityError: if the buffer cannot hold whole vectors
    """
    if dimensions <= 0:
        raise ArtifactIntegrityError(f"Invalid embedding dimensions: {dimensions}")
    if len(buffer) % 2 != 0:
        raise ArtifactIntegrityError(f"Embedding buffer has odd length {len(buffer)}")

    values = np.frombuffer(buffer, dtype=FLOAT16_LE)
    if values.size % dimensions != 0:
        raise ArtifactIntegrityError(
            f"Embedding buffer holds {values.size} values, not a multiple of {dimensions}"
        )
    return values.astype(FLOAT32).reshape(-1, dimensions)


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vector))
    if norm > 0 and np.isfinite(norm):
        return vector / norm
    return vector


def cosine_scores(matrix: np.ndarray, query: Sequence[float]) -> np.ndarray:
    """
    Cosine similarity of `query` against every row of `matrix`.

    Rows (or a query) with zero norm score 0.

    Raises:
        DimensionMismatchError: If `query` and the rows differ in length
    """
    query_vec = np.asarray(query, dtype=FLOAT32).ravel()
    if matrix.size == 0 or query_vec.size == 0:
        return np.zeros(matrix.shape[0] if matrix.ndim == 2 else 0, dtype=FLOAT32)

    if matrix.shape[1] != query_vec.size:
        raise DimensionMismatchError(
            f"Query has {query_vec.size} dimensions, stored vectors have {matrix.shape[1]}"
        )

    row_norms = np.linalg.norm(matrix, axis=1)
    query_norm = float(np.linalg.norm(query_vec))
    denom = row_norms * query_norm

    with np.errstate(invalid='ignore', divide='ignore'):
        scores = (matrix @ query_vec) / denom
    scores[~np.isfinite(scores)] = 0.0
    return scores.astype(FLOAT32)


def rank_top_k(scores: np.ndarray, k: int) -> np.ndarray:
    """
    Indices of the k best scores, descending.

    Ties keep ascending index order (stable sort), so results are
    identical across calls and a larger k extends a smaller one.
    """
    if k <= 0 or scores.size == 0:
        return np.zeros(0, dtype=np.int64)
    order = np.argsort(-scores, kind='stable')
    return order[:k]
