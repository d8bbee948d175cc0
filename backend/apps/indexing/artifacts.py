"""
Packaged index artifacts.

An artifact is a gzip-compressed tar holding:

    manifest.json       document hash, stats, file list, payload digests, checksum
    chunks.jsonl.gz     one record per chunk, in embedding order
    embeddings.f16.bin  little-endian float16 vectors, row-major
    names.map.json      fileId -> {path, name, pages}
    hnsw.index          optional approximate search index

The manifest checksum is verified on every load; a mismatch means the
artifact is partial or tampered with and it is never served.
"""
import gzip
import hashlib
import io
import json
import logging
import re
import tarfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, Dict, List, Optional

import numpy as np

from apps.indexing.vectors import ArtifactIntegrityError, unpack_float16

logger = logging.getLogger(__name__)

INDEX_ARTIFACT_VERSION = 1
INDEX_SCHEMA = 'bidwizer.index/v1'
ARTIFACT_STORAGE_PREFIX = 'tenders'

INDEX_ARTIFACT_FILENAME = 'index.v1.tar.gz'
INDEX_MANIFEST_FILENAME = 'manifest.json'
INDEX_CHUNKS_FILENAME = 'chunks.jsonl.gz'
INDEX_EMBEDDINGS_FILENAME = 'embeddings.f16.bin'
INDEX_FILE_MAP_FILENAME = 'names.map.json'
INDEX_HNSW_FILENAME = 'hnsw.index'

ARTIFACT_INNER_FILES = (
    INDEX_MANIFEST_FILENAME,
    INDEX_CHUNKS_FILENAME,
    INDEX_EMBEDDINGS_FILENAME,
    INDEX_FILE_MAP_FILENAME,
    INDEX_HNSW_FILENAME,
)

_VERSION_SEGMENT_RE = re.compile(r'^v(\d+)$')


def build_artifact_storage_key(org_id: str, tender_id: str, doc_hash: str, version: int = INDEX_ARTIFACT_VERSION) -> str:
    return '/'.join([
        ARTIFACT_STORAGE_PREFIX,
        org_id,
        tender_id,
        'indexes',
        doc_hash,
        f'v{version}',
        INDEX_ARTIFACT_FILENAME,
    ])


def parse_artifact_storage_key(storage_key: str) -> Optional[Dict[str, Any]]:
    """
    Split an artifact storage key into its parts.

    Returns:
        {'orgId', 'tenderId', 'docHash', 'version'} or None if the key is not
        an artifact key
    """
    segments = [s for s in (storage_key or '').split('/') if s]
    if len(segments) < 7:
        return None

    prefix, org_id, tender_id, indexes, doc_hash, version_segment, filename = segments[-7:]
    if prefix != ARTIFACT_STORAGE_PREFIX or indexes != 'indexes':
        return None
    match = _VERSION_SEGMENT_RE.match(version_segment)
    if not match or filename != INDEX_ARTIFACT_FILENAME:
        return None

    return {
        'orgId': org_id,
        'tenderId': tender_id,
        'docHash': doc_hash,
        'version': int(match.group(1)),
    }


def file_id_for_path(path: str) -> str:
    """Stable id of a file inside an upload (sha1 of its normalized path)."""
    normalized = path.replace('\\', '/')
    return hashlib.sha1(normalized.encode('utf-8')).hexdigest()


def chunk_record(file_id: str, index: int, page: int, offset: int, text: str) -> Dict:
    """One line of chunks.jsonl.gz; `index` counts chunks across the whole artifact."""
    return {
        'chunkId': f"{file_id}:{index:06d}",
        'fileId': file_id,
        'page': page,
        'offset': offset,
        'length': len(text),
        'md5': hashlib.md5(text.encode('utf-8')).hexdigest(),
        'text': text,
    }


def names_entry(path: str, pages: int) -> Dict:
    return {'path': path, 'name': PurePosixPath(path).name, 'pages': pages}


def _canonical_json(value) -> str:
    return json.dumps(value, sort_keys=True, separators=(',', ':'), ensure_ascii=False)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def compute_checksum(manifest: Dict) -> str:
    """sha256 over stats, files, payload digests and the document hash."""
    digest = hashlib.sha256()
    digest.update(_canonical_json(manifest['stats']).encode('utf-8'))
    digest.update(_canonical_json(manifest['files']).encode('utf-8'))
    digest.update(_canonical_json(manifest.get('payload') or {}).encode('utf-8'))
    digest.update(manifest['docHash'].encode('utf-8'))
    return digest.hexdigest()


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_manifest(
    doc_hash: str,
    org_id: str,
    tender_id: str,
    stats: Dict,
    files: List[Dict],
    chunks_blob: bytes,
    embeddings_blob: bytes,
    version: int = INDEX_ARTIFACT_VERSION,
    created_at: Optional[str] = None,
    has_hnsw_index: bool = False,
) -> Dict:
    """
    Assemble the manifest for a packaged index and stamp its checksum.

    Args:
        stats: totalChunks, totalPages, totalTokens, chunkSize, chunkOverlap,
            embeddingModel, embeddingDimensions
        files: fileId, path, sha256, pages, size per source file
        chunks_blob: The exact chunks.jsonl.gz bytes that will be packed
        embeddings_blob: The exact embeddings.f16.bin bytes that will be packed
    """
    now = _iso_now()
    manifest = {
        'version': version,
        'schema': INDEX_SCHEMA,
        'docHash': doc_hash,
        'orgId': org_id,
        'tenderId': tender_id,
        'createdAt': created_at or now,
        'updatedAt': now,
        'stats': stats,
        'files': files,
        'payload': {
            'chunksSha256': sha256_hex(chunks_blob),
            'embeddingsSha256': sha256_hex(embeddings_blob),
        },
        'hasHnswIndex': has_hnsw_index,
        'checksum': '',
    }
    manifest['checksum'] = compute_checksum(manifest)
    return manifest


def encode_chunks(records: List[Dict]) -> bytes:
    lines = '\n'.join(json.dumps(r, ensure_ascii=False) for r in records)
    return gzip.compress(lines.encode('utf-8'), mtime=0)


def _add_member(tar: tarfile.TarFile, name: str, data: bytes, mtime: int) -> None:
    info = tarfile.TarInfo(name=name)
    info.size = len(data)
    info.mtime = mtime
    info.mode = 0o644
    tar.addfile(info, io.BytesIO(data))


def pack_artifact(
    manifest: Dict,
    chunks_blob: bytes,
    embeddings_blob: bytes,
    names: Dict,
    hnsw_blob: Optional[bytes] = None,
) -> bytes:
    """Write the inner files into a gzip-compressed tar and return its bytes."""
    buffer = io.BytesIO()
    mtime = int(time.time())
    with tarfile.open(fileobj=buffer, mode='w:gz') as tar:
        _add_member(tar, INDEX_MANIFEST_FILENAME, json.dumps(manifest, indent=2).encode('utf-8'), mtime)
        _add_member(tar, INDEX_CHUNKS_FILENAME, chunks_blob, mtime)
        _add_member(tar, INDEX_EMBEDDINGS_FILENAME, embeddings_blob, mtime)
        _add_member(tar, INDEX_FILE_MAP_FILENAME, json.dumps(names, indent=2).encode('utf-8'), mtime)
        if hnsw_blob:
            _add_member(tar, INDEX_HNSW_FILENAME, hnsw_blob, mtime)
    return buffer.getvalue()


class VectorSearchAdapter:
    """
    Approximate nearest-neighbour index owned by a loaded artifact.

    search() returns (index, score) pairs, best first.
    """
    dims: int = 0

    def search(self, vector: np.ndarray, top_k: int) -> List[tuple]:
        raise NotImplementedError

    def close(self) -> None:
        pass


@dataclass
class LoadedArtifact:
    """A decoded artifact ready for search."""
    doc_hash: str
    manifest: Dict
    chunks: List[Dict]
    embeddings: np.ndarray  # (total_chunks, dims) float32
    dims: int
    names: Dict
    memory_bytes: int  # decoded footprint, charged against the cache budget
    adapter: Optional[VectorSearchAdapter] = field(default=None, repr=False)

    @property
    def embedding_model(self) -> str:
        return self.manifest['stats'].get('embeddingModel', '')


def _read_members(data: bytes) -> Dict[str, bytes]:
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode='r:gz') as tar:
            members = {}
            for member in tar.getmembers():
                if not member.isfile():
                    continue
                name = PurePosixPath(member.name).name
                if name not in ARTIFACT_INNER_FILES:
                    continue
                handle = tar.extractfile(member)
                members[name] = handle.read() if handle is not None else b''
            return members
    except (tarfile.TarError, OSError, EOFError) as e:
        raise ArtifactIntegrityError(f"Artifact is not a readable gzip tar: {e}") from e


def _decode_chunks(blob: bytes) -> List[Dict]:
    try:
        text = gzip.decompress(blob).decode('utf-8')
        return [json.loads(line) for line in text.splitlines() if line.strip()]
    except (OSError, EOFError, ValueError) as e:
        raise ArtifactIntegrityError(f"Unreadable {INDEX_CHUNKS_FILENAME}: {e}") from e


def unpack_artifact(data: bytes, expected_doc_hash: Optional[str] = None) -> LoadedArtifact:
    """
    Decode and verify an artifact.

    Raises:
        ArtifactIntegrityError: On a missing inner file, bad dimensions, a
            malformed embedding buffer, a chunk count mismatch, a payload
            digest or checksum mismatch, or an unexpected document hash
    """
    members = _read_members(data)

    for required in (INDEX_MANIFEST_FILENAME, INDEX_CHUNKS_FILENAME, INDEX_EMBEDDINGS_FILENAME):
        if required not in members:
            raise ArtifactIntegrityError(f"Artifact missing {required}")

    try:
        manifest = json.loads(members[INDEX_MANIFEST_FILENAME].decode('utf-8'))
        stats = manifest['stats']
        doc_hash = manifest['docHash']
        dims = int(stats['embeddingDimensions'])
    except (ValueError, KeyError, TypeError) as e:
        raise ArtifactIntegrityError(f"Malformed manifest: {e}") from e

    if dims <= 0:
        raise ArtifactIntegrityError(f"Manifest embedding dimensions invalid: {dims}")

    if expected_doc_hash is not None and doc_hash != expected_doc_hash:
        raise ArtifactIntegrityError(
            f"Artifact doc hash mismatch. Expected {expected_doc_hash}, got {doc_hash}"
        )

    chunks_blob = members[INDEX_CHUNKS_FILENAME]
    embeddings_blob = members[INDEX_EMBEDDINGS_FILENAME]

    payload = manifest.get('payload') or {}
    if payload.get('chunksSha256') != sha256_hex(chunks_blob):
        raise ArtifactIntegrityError(f"{INDEX_CHUNKS_FILENAME} does not match the manifest digest")
    if payload.get('embeddingsSha256') != sha256_hex(embeddings_blob):
        raise ArtifactIntegrityError(f"{INDEX_EMBEDDINGS_FILENAME} does not match the manifest digest")

    if manifest.get('checksum') != compute_checksum(manifest):
        raise ArtifactIntegrityError(f"Manifest checksum mismatch for {doc_hash}")

    embeddings = unpack_float16(embeddings_blob, dims)
    chunks = _decode_chunks(chunks_blob)

    if len(chunks) != embeddings.shape[0]:
        raise ArtifactIntegrityError(
            f"Artifact holds {len(chunks)} chunks but {embeddings.shape[0]} vectors"
        )
    if int(stats.get('totalChunks', len(chunks))) != len(chunks):
        raise ArtifactIntegrityError(
            f"Manifest declares {stats.get('totalChunks')} chunks, artifact holds {len(chunks)}"
        )

    names_blob = members.get(INDEX_FILE_MAP_FILENAME)
    try:
        names = json.loads(names_blob.decode('utf-8')) if names_blob else {}
    except ValueError as e:
        raise ArtifactIntegrityError(f"Unreadable {INDEX_FILE_MAP_FILENAME}: {e}") from e

    memory_bytes = sum(len(blob) for blob in members.values()) + embeddings.nbytes

    return LoadedArtifact(
        doc_hash=doc_hash,
        manifest=manifest,
        chunks=chunks,
        embeddings=embeddings,
        dims=dims,
        names=names,
        memory_bytes=memory_bytes,
    )
