"""
Tests for packaged index artifacts, the artifact cache and artifact search.
"""
import gzip
import io
import json
import tarfile

import numpy as np
import pytest

from apps.indexing.artifacts import (
    INDEX_CHUNKS_FILENAME,
    INDEX_EMBEDDINGS_FILENAME,
    INDEX_MANIFEST_FILENAME,
    build_artifact_storage_key,
    build_manifest,
    chunk_record,
    encode_chunks,
    file_id_for_path,
    names_entry,
    pack_artifact,
    parse_artifact_storage_key,
    unpack_artifact,
)
from apps.indexing.payloads import index_scope
from apps.indexing.vectors import ArtifactIntegrityError, pack_float16
from apps.rag.cache import LRUCache
from apps.rag.loader import ArtifactLoader, clamp_top_k

DOC_HASH = 'f' * 64
SCOPE = index_scope('org-1', 'tender-1', DOC_HASH)


def make_artifact(vectors, texts=None, doc_hash=DOC_HASH, path='tender/scope.txt'):
    """Pack an artifact with one chunk per vector, all on page 1."""
    file_id = file_id_for_path(path)
    texts = texts or [f"chunk {i}" for i in range(len(vectors))]
    records = [chunk_record(file_id, i, 1, i * 10, text) for i, text in enumerate(texts)]
    chunks_blob = encode_chunks(records)
    embeddings_blob = pack_float16(vectors)
    stats = {
        'totalChunks': len(records),
        'totalPages': 1,
        'totalTokens': 10,
        'chunkSize': 1024,
        'chunkOverlap': 160,
        'embeddingModel': 'test-model',
        'embeddingDimensions': len(vectors[0]),
    }
    files = [{'fileId': file_id, 'path': path, 'sha256': 'x', 'pages': 1, 'size': 10}]
    manifest = build_manifest(doc_hash, 'org-1', 'tender-1', stats, files, chunks_blob, embeddings_blob)
    return pack_artifact(manifest, chunks_blob, embeddings_blob, {file_id: names_entry(path, 1)})


def repack(data: bytes, replace: dict) -> bytes:
    """Rewrite selected inner files of a packed artifact."""
    members = {}
    with tarfile.open(fileobj=io.BytesIO(data), mode='r:gz') as tar:
        for member in tar.getmembers():
            members[member.name] = tar.extractfile(member).read()
    members.update(replace)

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w:gz') as tar:
        for name, blob in members.items():
            info = tarfile.TarInfo(name=name)
            info.size = len(blob)
            tar.addfile(info, io.BytesIO(blob))
    return buffer.getvalue()


# ============================================================================
# Storage keys
# ============================================================================

class TestStorageKeys:

    def test_build_and_parse(self):
        key = build_artifact_storage_key('org-1', 'tender-1', DOC_HASH, 3)

        assert key == f"tenders/org-1/tender-1/indexes/{DOC_HASH}/v3/index.v1.tar.gz"
        assert parse_artifact_storage_key(key) == {
            'orgId': 'org-1', 'tenderId': 'tender-1', 'docHash': DOC_HASH, 'version': 3,
        }

    def test_fallback_prefix_is_tolerated(self):
        key = 'local://' + build_artifact_storage_key('o', 't', DOC_HASH)

        assert parse_artifact_storage_key(key)['version'] == 1

    @pytest.mark.parametrize('key', [
        '',
        'tenders/o/t/indexes/h/v1',
        'tenders/o/t/other/h/v1/index.v1.tar.gz',
        'tenders/o/t/indexes/h/latest/index.v1.tar.gz',
        'tenders/o/t/indexes/h/v1/index.tar',
    ])
    def test_rejects_other_keys(self, key):
        assert parse_artifact_storage_key(key) is None


# ============================================================================
# Pack / unpack
# ============================================================================

class TestUnpackArtifact:
    """Tests for artifact verification."""

    def test_round_trip(self):
        data = make_artifact([[1.0, 0.0], [0.0, 1.0]], texts=["Alpha", "Beta"])

        artifact = unpack_artifact(data, expected_doc_hash=DOC_HASH)

        assert artifact.doc_hash == DOC_HASH
        assert artifact.dims == 2
        assert artifact.embeddings.shape == (2, 2)
        assert [c['text'] for c in artifact.chunks] == ["Alpha", "Beta"]
        assert artifact.embedding_model == 'test-model'
        file_id = artifact.chunks[0]['fileId']
        assert artifact.names[file_id]['name'] == 'scope.txt'

    def test_memory_bytes_counts_decoded_members(self):
        data = make_artifact([[1.0, 0.0], [0.0, 1.0]], texts=["Alpha", "Beta"])
        with tarfile.open(fileobj=io.BytesIO(data), mode='r:gz') as tar:
            member_bytes = sum(m.size for m in tar.getmembers() if m.isfile())

        artifact = unpack_artifact(data)

        assert artifact.memory_bytes == member_bytes + artifact.embeddings.nbytes

    def test_chunk_ids_are_zero_padded(self):
        record = chunk_record('abc', 7, 2, 40, "text")

        assert record['chunkId'] == 'abc:000007'
        assert record['length'] == 4

    def test_unexpected_doc_hash(self):
        data = make_artifact([[1.0, 0.0]])

        with pytest.raises(ArtifactIntegrityError):
            unpack_artifact(data, expected_doc_hash='0' * 64)

    def test_tampered_embeddings_fail_digest(self):
        data = make_artifact([[1.0, 0.0]])

        tampered = repack(data, {INDEX_EMBEDDINGS_FILENAME: pack_float16([[0.0, 1.0]])})

        with pytest.raises(ArtifactIntegrityError):
            unpack_artifact(tampered)

    def test_tampered_manifest_fails_checksum(self):
        data = make_artifact([[1.0, 0.0]])
        with tarfile.open(fileobj=io.BytesIO(data), mode='r:gz') as tar:
            manifest = json.loads(tar.extractfile(INDEX_MANIFEST_FILENAME).read())
        manifest['stats']['totalPages'] = 99

        tampered = repack(data, {INDEX_MANIFEST_FILENAME: json.dumps(manifest).encode()})

        with pytest.raises(ArtifactIntegrityError):
            unpack_artifact(tampered)

    def test_chunk_count_mismatch(self):
        """Consistent digests but one vector too many."""
        file_id = file_id_for_path('a.txt')
        chunks_blob = encode_chunks([chunk_record(file_id, 0, 1, 0, "only")])
        embeddings_blob = pack_float16([[1.0, 0.0], [0.0, 1.0]])
        stats = {'totalChunks': 1, 'embeddingDimensions': 2, 'embeddingModel': 'm'}
        manifest = build_manifest(DOC_HASH, 'o', 't', stats, [], chunks_blob, embeddings_blob)
        data = pack_artifact(manifest, chunks_blob, embeddings_blob, {})

        with pytest.raises(ArtifactIntegrityError):
            unpack_artifact(data)

    def test_missing_inner_file(self):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode='w:gz') as tar:
            blob = gzip.compress(b'')
            info = tarfile.TarInfo(name=INDEX_CHUNKS_FILENAME)
            info.size = len(blob)
            tar.addfile(info, io.BytesIO(blob))

        with pytest.raises(ArtifactIntegrityError):
            unpack_artifact(buffer.getvalue())

    def test_not_a_tarball(self):
        with pytest.raises(ArtifactIntegrityError):
            unpack_artifact(b'definitely not gzip')


# ============================================================================
# Cache
# ============================================================================

class TestLRUCache:

    def test_evicts_least_recently_used(self):
        disposed = []
        cache = LRUCache(max_entries=2, on_dispose=lambda value, key: disposed.append(key))
        cache.set('a', 1)
        cache.set('b', 2)
        cache.get('a')

        cache.set('c', 3)

        assert 'b' not in cache
        assert cache.get('a') == 1
        assert disposed == ['b']

    def test_byte_budget(self):
        cache = LRUCache(max_entries=10, max_bytes=100)
        cache.set('a', 'x', size=60)
        cache.set('b', 'y', size=60)

        assert 'a' not in cache
        assert cache.total_bytes == 60

    def test_delete_and_clear_dispose(self):
        disposed = []
        cache = LRUCache(on_dispose=lambda value, key: disposed.append(key))
        cache.set('a', 1, size=5)
        cache.set('b', 2, size=5)

        assert cache.delete('a') is True
        assert cache.delete('a') is False
        cache.clear()

        assert disposed == ['a', 'b']
        assert len(cache) == 0
        assert cache.total_bytes == 0

    def test_replacing_value_updates_size(self):
        cache = LRUCache()
        cache.set('a', 1, size=10)
        cache.set('a', 2, size=3)

        assert cache.get('a') == 2
        assert cache.total_bytes == 3

    def test_negative_size_rejected(self):
        with pytest.raises(ValueError):
            LRUCache().set('a', 1, size=-1)


# ============================================================================
# Loader
# ============================================================================

class TestArtifactLoader:

    @pytest.fixture
    def loader(self, blobs):
        vectors = [[1.0, 0.0], [0.0, 1.0], [1.0, 0.0], [0.7, 0.7]]
        blobs.put('indexes', 'k/index.v1.tar.gz', make_artifact(vectors))
        return ArtifactLoader(blobs, 'indexes', cache=LRUCache(max_entries=2))

    def test_load_caches_by_scope(self, loader, blobs):
        first = loader.load('k/index.v1.tar.gz', scope=SCOPE)
        blobs.delete('indexes', 'k/index.v1.tar.gz')

        assert loader.load('k/index.v1.tar.gz', scope=SCOPE) is first
        assert loader.get_cached(SCOPE) is first
        assert loader.get_cached(index_scope('org-2', 'tender-1', DOC_HASH)) is None

    def test_cache_is_charged_decoded_size(self, loader):
        artifact = loader.load('k/index.v1.tar.gz', scope=SCOPE)

        assert loader.cache.total_bytes == artifact.memory_bytes

    def test_scope_hash_is_verified(self, loader):
        with pytest.raises(ArtifactIntegrityError):
            loader.load('k/index.v1.tar.gz', scope=index_scope('org-1', 'tender-1', '0' * 64))

    def test_load_without_scope_is_not_cached(self, loader):
        loader.load('k/index.v1.tar.gz')

        assert len(loader.cache) == 0

    def test_release(self, loader):
        loader.load('k/index.v1.tar.gz', scope=SCOPE)

        assert loader.release(SCOPE) is True
        assert loader.release(SCOPE) is False

    def test_search_orders_by_score_then_index(self, loader):
        artifact = loader.load('k/index.v1.tar.gz', scope=SCOPE)

        matches = loader.search(artifact, [1.0, 0.0], 4)

        assert [m.index for m in matches] == [0, 2, 3, 1]
        assert matches[0].score == pytest.approx(1.0)

    def test_search_prefix_property(self, loader):
        artifact = loader.load('k/index.v1.tar.gz', scope=SCOPE)
        query = np.array([0.9, 0.2], dtype=np.float32)

        full = [m.index for m in loader.search(artifact, query, 4)]
        for k in range(1, 4):
            assert [m.index for m in loader.search(artifact, query, k)] == full[:k]

    def test_clamp_top_k(self):
        assert clamp_top_k(None, default=8) == 8
        assert clamp_top_k(0) == 1
        assert clamp_top_k(100) == 24
        assert clamp_top_k("5") == 5
        assert clamp_top_k("many", default=6) == 6
