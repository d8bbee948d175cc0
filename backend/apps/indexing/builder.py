"""
Artifact build job.

Builds the packaged index of an upload in three phases under the index
lock, reporting progress as it goes:

1. manifest:  download the upload, verify its hash, expand, extract and chunk
2. embedding: embed chunk batches, persisting each batch to the workspace
3. finalize:  pack the artifact, upload it and mark the IndexArtifact READY

Embedded batches survive a crashed or retried job in the workspace
directory, and the resume state records how many are done, so a retry
only embeds what is missing.
"""
import hashlib
import json
import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from django.conf import settings
from django.db import close_old_connections

from apps.authn.audit import audit_indexing_completed, audit_indexing_failed
from apps.docs.models import ArtifactStatus, IndexArtifact
from apps.indexing.archive import ArchiveEntry, expand_archive, looks_like_archive
from apps.indexing.artifacts import (
    INDEX_ARTIFACT_VERSION,
    build_artifact_storage_key,
    build_manifest,
    chunk_record,
    encode_chunks,
    file_id_for_path,
    names_entry,
    pack_artifact,
)
from apps.indexing.chunker import chunk_spans, estimate_tokens
from apps.indexing.embedder import FALLBACK_EMBEDDING_MODEL, fallback_embedding_batch
from apps.indexing.errors import ConsistencyError, InputError, truncate_error
from apps.indexing.extractor import ExtractionError, extract_pages, sha256_hex
from apps.indexing.locks import (
    INDEX_LOCK_HEARTBEAT_MS,
    INDEX_LOCK_TTL_MS,
    LockError,
    index_lock_key,
    lock_ttl,
)
from apps.indexing.payloads import ArtifactPayload
from apps.indexing.progress import ResumeState, estimate_eta
from apps.indexing.vectors import pack_float16

logger = logging.getLogger(__name__)

STATE_FILENAME = 'state.json'


def batch_filename(index: int) -> str:
    return f"batch-{index:05d}.f16"


@dataclass
class SourceFile:
    """One document inside the upload, after extraction."""
    file_id: str
    path: str
    sha256: str
    size: int
    pages: List[str] = field(default_factory=list)
    skipped: bool = False

    def manifest_entry(self) -> Dict:
        entry = {
            'fileId': self.file_id,
            'path': self.path,
            'sha256': self.sha256,
            'pages': len(self.pages),
            'size': self.size,
        }
        if self.skipped:
            entry['skipped'] = True
        return entry


def workspace_name(payload: ArtifactPayload) -> str:
    """Directory of one build; org and tender ids are hashed to stay path-safe."""
    tenant = hashlib.sha1(f"{payload.org_id}:{payload.tender_id}".encode('utf-8')).hexdigest()[:16]
    return f"{tenant}-{payload.doc_hash}"


class ArtifactBuilder:
    """Runs artifact builds against the components of a PipelineRuntime."""

    def __init__(self, runtime):
        self.runtime = runtime
        self.blobs = runtime.blobs
        self.locks = runtime.locks
        self.progress = runtime.progress
        self.embedder = runtime.embedder

    # -------------------------------------------------------------------------
    # Workspace
    # -------------------------------------------------------------------------

    def workspace(self, payload: ArtifactPayload) -> Path:
        return Path(self.runtime.workspace_root) / workspace_name(payload)

    def cleanup_workspace(self, payload: ArtifactPayload) -> None:
        path = self.workspace(payload)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)

    def _read_state(self, payload: ArtifactPayload) -> Dict:
        path = self.workspace(payload) / STATE_FILENAME
        if not path.exists():
            return {}
        try:
            return json.loads(path.read_text(encoding='utf-8'))
        except ValueError:
            logger.warning(f"Discarding unreadable workspace state for {payload.doc_hash[:12]}")
            return {}

    def _write_state(self, payload: ArtifactPayload, state: Dict) -> None:
        path = self.workspace(payload) / STATE_FILENAME
        path.write_text(json.dumps(state, indent=2), encoding='utf-8')

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    def touch_job(self, payload: ArtifactPayload) -> None:
        """
        Refresh the running job's locked_at so requeue_stalled leaves it alone.

        Runs on the lock heartbeat thread, which owns its own DB connection.
        """
        try:
            self.runtime.queue.touch(payload.job_key)
        finally:
            close_old_connections()

    def build(self, payload: ArtifactPayload) -> Optional[IndexArtifact]:
        """
        Build (or confirm) the artifact for `payload`.

        Returns:
            The IndexArtifact row, or None if another worker holds the index lock.
        """
        doc_hash = payload.doc_hash
        scope = payload.scope
        ttl_ms = lock_ttl('INDEX_LOCK_TTL_MS', INDEX_LOCK_TTL_MS)

        with self.locks.hold(
            index_lock_key(scope),
            ttl_ms,
            heartbeat_ms=INDEX_LOCK_HEARTBEAT_MS,
            on_extend=lambda: self.touch_job(payload),
        ) as lease:
            if lease is None:
                return None

            existing = IndexArtifact.objects.filter(
                org_id=payload.org_id,
                tender_id=payload.tender_id,
                doc_hash=doc_hash,
            ).first()
            if (
                existing is not None
                and not payload.force
                and existing.status == ArtifactStatus.READY
                and existing.storage_key
                and self.blobs.exists(self.runtime.index_bucket, existing.storage_key)
            ):
                logger.info(f"Artifact for {doc_hash[:12]} already READY; skipping build")
                self.progress.update(scope, 'ready', 100, message='Artifact ready')
                return existing

            artifact, _ = IndexArtifact.objects.update_or_create(
                org_id=payload.org_id,
                tender_id=payload.tender_id,
                doc_hash=doc_hash,
                defaults={
                    'upload_id': payload.upload_id,
                    'version': payload.version or INDEX_ARTIFACT_VERSION,
                    'status': ArtifactStatus.BUILDING,
                    'error': None,
                },
            )
            if payload.force:
                self.progress.clear_resume(scope)
                self.cleanup_workspace(payload)

            self.workspace(payload).mkdir(parents=True, exist_ok=True)

            files = self._manifest_phase(payload)
            records, texts, stats = self._chunk_files(files)
            if not records:
                raise InputError("Upload contains no extractable text")

            vectors_blob, model, dims = self._embedding_phase(payload, records, texts, lease)
            stats['embeddingModel'] = model
            stats['embeddingDimensions'] = dims

            return self._finalize_phase(payload, artifact, files, records, vectors_blob, stats)

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _manifest_phase(self, payload: ArtifactPayload) -> List[SourceFile]:
        doc_hash = payload.doc_hash
        scope = payload.scope
        self.progress.update(scope, 'manifest', 3, batchesDone=0, totalBatches=0, message='Downloading source')

        data = self.blobs.get(payload.bucket, payload.storage_key)
        computed = sha256_hex(data)
        if computed != doc_hash:
            raise ConsistencyError(f"Doc hash mismatch: expected {doc_hash}, computed {computed}")

        self.progress.update(scope, 'manifest', 10, message='Scanning contents')

        if looks_like_archive(payload.filename, data):
            entries = expand_archive(data)
            single = False
        else:
            entries = [ArchiveEntry(path=payload.filename or doc_hash, data=data)]
            single = True

        files = []
        for entry in entries:
            source = SourceFile(
                file_id=file_id_for_path(entry.path),
                path=entry.path,
                sha256=sha256_hex(entry.data),
                size=len(entry.data),
            )
            try:
                source.pages = extract_pages(entry.data, entry.path)
            except ExtractionError as e:
                if single:
                    raise
                logger.warning(f"Skipping {entry.path} in {doc_hash[:12]}: {e}")
                source.skipped = True
            files.append(source)

        self.progress.update(scope, 'manifest', 25, message=f"Discovered {len(files)} document(s)")
        return files

    def _chunk_files(self, files: List[SourceFile]):
        chunk_size = self.runtime.chunk_size
        chunk_overlap = self.runtime.chunk_overlap
        records: List[Dict] = []
        texts: List[str] = []
        total_pages = 0
        total_tokens = 0

        for source in files:
            total_pages += len(source.pages)
            for page_number, page_text in enumerate(source.pages, start=1):
                if not page_text:
                    continue
                for start, end in chunk_spans(page_text, chunk_size, chunk_overlap):
                    text = page_text[start:end]
                    records.append(chunk_record(source.file_id, len(records), page_number, start, text))
                    texts.append(text)
                    total_tokens += estimate_tokens(text)

        stats = {
            'totalChunks': len(records),
            'totalPages': total_pages,
            'totalTokens': total_tokens,
            'chunkSize': chunk_size,
            'chunkOverlap': chunk_overlap,
        }
        return records, texts, stats

    def _resume_point(self, payload: ArtifactPayload, chunks_digest: str, total_batches: int) -> ResumeState:
        """
        Resume state that still matches this build, or a fresh one.

        Batches are only reused when the chunk stream and batch size are
        unchanged and every counted batch file is on disk.
        """
        resume = self.progress.read_resume(payload.scope)
        state = self._read_state(payload)
        fresh = ResumeState()

        if resume is None or not resume.batchesProcessed:
            return fresh
        if state.get('chunksDigest') != chunks_digest or state.get('batchSize') != self.embedder.batch_size:
            logger.info(f"Chunk stream changed for {payload.doc_hash[:12]}; embedding from scratch")
            return fresh
        if resume.embeddingModel not in (self.embedder.model, FALLBACK_EMBEDDING_MODEL):
            return fresh

        workspace = self.workspace(payload)
        done = min(resume.batchesProcessed, total_batches)
        if not all((workspace / batch_filename(i)).exists() for i in range(done)):
            return fresh

        resume.batchesProcessed = done
        return resume

    def _embedding_phase(self, payload: ArtifactPayload, records: List[Dict], texts: List[str], lease):
        doc_hash = payload.doc_hash
        scope = payload.scope
        workspace = self.workspace(payload)
        batches = self.embedder.batches(texts)
        total = len(batches)
        chunks_digest = sha256_hex(encode_chunks(records))

        resume = self._resume_point(payload, chunks_digest, total)
        self._write_state(payload, {
            'docHash': doc_hash,
            'chunksDigest': chunks_digest,
            'batchSize': self.embedder.batch_size,
            'totalBatches': total,
        })

        done = resume.batchesProcessed
        model = resume.embeddingModel
        dims = resume.embeddingDimensions
        use_fallback = model == FALLBACK_EMBEDDING_MODEL
        if done:
            logger.info(f"Resuming {doc_hash[:12]} at batch {done}/{total}")

        started = time.time()
        offset = sum(len(b) for b in batches[:done])

        for i in range(done, total):
            if lease.lost:
                raise LockError(f"Lost index lock for {doc_hash[:12]} during embedding")

            result = self.embedder.embed_batch(batches[i], force_fallback=use_fallback)

            if result.fallback and not use_fallback:
                use_fallback = True
                if i > 0:
                    # Earlier batches came from the provider
                    logger.warning(f"Re-embedding {i} batch(es) of {doc_hash[:12]} with the fallback model")
                    for j in range(i):
                        redo = fallback_embedding_batch(batches[j])
                        (workspace / batch_filename(j)).write_bytes(pack_float16(redo.vectors))

            if dims is not None and model == result.model and dims != result.dimensions:
                raise ConsistencyError(
                    f"Embedding dimensions changed mid-build ({dims} -> {result.dimensions})"
                )
            model, dims = result.model, result.dimensions

            (workspace / batch_filename(i)).write_bytes(pack_float16(result.vectors))
            offset += len(batches[i])
            last = records[offset - 1]

            self.progress.write_resume(scope, ResumeState(
                lastFile=last['fileId'],
                lastPage=last['page'],
                lastOffset=last['offset'],
                batchesProcessed=i + 1,
                embeddingModel=model,
                embeddingDimensions=dims,
            ))
            self.progress.update(
                scope,
                'embedding',
                30 + 60 * (i + 1) / total,
                batchesDone=i + 1,
                totalBatches=total,
                etaSeconds=estimate_eta(started, i + 1 - done, total - done),
                message=f"Embedding chunks ({i + 1}/{total} batches)",
            )

        vectors_blob = b''.join((workspace / batch_filename(i)).read_bytes() for i in range(total))
        expected_bytes = len(records) * dims * 2
        if len(vectors_blob) != expected_bytes:
            raise ConsistencyError(
                f"Embedding buffer is {len(vectors_blob)} bytes, expected {expected_bytes}"
            )

        self.progress.update(scope, 'embedding', 95, batchesDone=total, totalBatches=total, message='Embedding completed')
        return vectors_blob, model, dims

    def _finalize_phase(
        self,
        payload: ArtifactPayload,
        artifact: IndexArtifact,
        files: List[SourceFile],
        records: List[Dict],
        vectors_blob: bytes,
        stats: Dict,
    ) -> IndexArtifact:
        doc_hash = payload.doc_hash
        scope = payload.scope
        self.progress.update(scope, 'finalize', 96, message='Packaging artifact')

        chunks_blob = encode_chunks(records)
        manifest = build_manifest(
            doc_hash=doc_hash,
            org_id=payload.org_id,
            tender_id=payload.tender_id,
            stats=stats,
            files=[f.manifest_entry() for f in files],
            chunks_blob=chunks_blob,
            embeddings_blob=vectors_blob,
            version=payload.version,
        )
        names = {f.file_id: names_entry(f.path, len(f.pages)) for f in files}
        packed = pack_artifact(manifest, chunks_blob, vectors_blob, names)

        storage_key = build_artifact_storage_key(payload.org_id, payload.tender_id, doc_hash, payload.version)
        stored_key = self.blobs.put(self.runtime.index_bucket, storage_key, packed, content_type='application/gzip')

        artifact.status = ArtifactStatus.READY
        artifact.storage_key = stored_key
        artifact.version = payload.version
        artifact.total_chunks = stats['totalChunks']
        artifact.total_pages = stats['totalPages']
        artifact.embedding_model = stats['embeddingModel']
        artifact.embedding_dimensions = stats['embeddingDimensions']
        artifact.checksum = manifest['checksum']
        artifact.bytes = len(packed)
        artifact.error = None
        artifact.save()

        # A rebuilt artifact must not be served from a stale cache entry
        self.runtime.artifacts.release(scope)

        self.progress.update(scope, 'ready', 100, batchesDone=0, totalBatches=0, message='Artifact uploaded')
        self.progress.clear_resume(scope)
        self.cleanup_workspace(payload)

        logger.info(
            f"Artifact {doc_hash[:12]} v{payload.version} ready: {stats['totalChunks']} chunks, "
            f"{len(packed)} bytes, model={stats['embeddingModel']}"
        )
        audit_indexing_completed(doc_hash, payload.org_id, stats['totalChunks'])
        return artifact

    # -------------------------------------------------------------------------
    # Failure
    # -------------------------------------------------------------------------

    def mark_failed(self, payload: ArtifactPayload, error: Exception) -> None:
        """Record a dead build: artifact FAILED, failed snapshot, workspace dropped."""
        message = truncate_error(error)

        IndexArtifact.objects.update_or_create(
            org_id=payload.org_id,
            tender_id=payload.tender_id,
            doc_hash=payload.doc_hash,
            defaults={
                'upload_id': payload.upload_id,
                'status': ArtifactStatus.FAILED,
                'error': message,
            },
        )
        self.progress.update(payload.scope, 'failed', 100, batchesDone=0, totalBatches=0, message=message)
        self.progress.clear_resume(payload.scope)
        self.cleanup_workspace(payload)
        audit_indexing_failed(payload.doc_hash, payload.org_id, message)


def default_workspace_root() -> Path:
    return Path(getattr(settings, 'INDEX_WORKSPACE_ROOT', '/tmp/tenderindex-workspace'))
