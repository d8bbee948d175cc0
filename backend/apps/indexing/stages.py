"""
Pipeline stage handlers.

Each handler processes one job kind:

    manifest -> extract -> chunk -> embed -> summary -> READY
    artifact (packaged index build, see builder.py)

Handlers take a per-(document, stage) lock and skip the job when another
worker holds it. Every stage first checks whether its output already
exists; if so it skips the work and enqueues its successor directly, so
replays and crash recovery need no special handling. Successors inherit
the priority of the job that produced them.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from django.conf import settings
from django.db import transaction

from apps.docs.models import (
    Document,
    DocumentStatus,
    DocumentSummary,
    IndexArtifact,
    ArtifactStatus,
    TenderIngestion,
    TenderReadiness,
    Upload,
    UploadKind,
    UploadStatus,
)
from apps.indexing.archive import ArchiveEntry, expand_archive, looks_like_archive
from apps.indexing.artifacts import INDEX_ARTIFACT_VERSION
from apps.indexing.builder import ArtifactBuilder
from apps.indexing.chunker import ChunkRecord, chunk_pages
from apps.indexing.errors import PipelineError, truncate_error
from apps.indexing.extractor import (
    decode_jsonl_gz,
    decode_pages,
    encode_jsonl_gz,
    encode_pages,
    extract_pages,
    file_extension,
    guess_content_type,
    inspect_pdf,
    sha256_hex,
)
from apps.indexing.locks import STAGE_LOCK_TTL_MS, lock_ttl, stage_lock_key
from apps.indexing.models import DocumentSection, JobKind
from apps.indexing.payloads import (
    ArtifactPayload,
    ChunkPayload,
    DocumentPayload,
    EmbedPayload,
    ExtractPayload,
    ManifestPayload,
    StoragePaths,
    SummaryPayload,
    document_storage_paths,
    index_scope,
    successor,
    tender_manifest_key,
)
from apps.indexing.queue import BASE_PRIORITY, compute_priority

logger = logging.getLogger(__name__)

SECTION_INSERT_BATCH = 50
SUMMARY_SECTION_COUNT = 8
ABSTRACT_SECTION_COUNT = 3
ABSTRACT_MAX_CHARS = 800
EMPTY_TEXT_ERROR = 'no text extracted; probably scanned PDF'
DEFAULT_PARTIAL_READY_THRESHOLD = 0.2


class DocumentNotFailedError(PipelineError):
    """Retry was requested for a document that has not failed."""
    permanent = True

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Retry available only for FAILED documents (current: {status})")


# =============================================================================
# Tender readiness
# =============================================================================

def partial_ready_threshold() -> float:
    value = float(getattr(settings, 'PARTIAL_READY_THRESHOLD', DEFAULT_PARTIAL_READY_THRESHOLD))
    return max(0.0, min(1.0, value))


def readiness_for(ready: int, total: int, threshold: Optional[float] = None) -> str:
    """
    READY when every document is ready, PARTIAL once the ready share reaches
    the threshold (and is non-zero), PENDING otherwise.
    """
    if total <= 0 or ready <= 0:
        return TenderReadiness.PENDING
    if ready >= total:
        return TenderReadiness.READY
    limit = partial_ready_threshold() if threshold is None else threshold
    if ready / total >= limit:
        return TenderReadiness.PARTIAL
    return TenderReadiness.PENDING


def recompute_tender_progress(tender_id: str) -> TenderIngestion:
    """Refresh the readiness rollup of a tender from its documents."""
    documents = Document.objects.filter(tender_id=tender_id)
    total = documents.count()
    ready = documents.filter(status=DocumentStatus.READY).count()

    ingestion, _ = TenderIngestion.objects.update_or_create(
        tender_id=tender_id,
        defaults={
            'status': readiness_for(ready, total),
            'ready_docs': ready,
            'total_docs': total,
        },
    )
    logger.debug(f"Tender {tender_id} readiness {ingestion.status} ({ready}/{total})")
    return ingestion


# =============================================================================
# Stage base
# =============================================================================

class Stage:
    """A handler for one job kind."""
    kind: JobKind = None

    def __init__(self, runtime):
        self.runtime = runtime
        self.blobs = runtime.blobs
        self.locks = runtime.locks
        self.progress = runtime.progress
        self.queue = runtime.queue

    def run(self, payload, priority: int = BASE_PRIORITY) -> None:
        raise NotImplementedError

    def on_failure(self, payload, error: Exception) -> None:
        """Called once the job is dead (permanent error or attempts exhausted)."""
        pass

    def lock(self, scope: str):
        return self.locks.hold(
            stage_lock_key(scope, self.kind.value),
            lock_ttl('STAGE_LOCK_TTL_MS', STAGE_LOCK_TTL_MS),
        )


class DocumentStage(Stage):
    """Shared behaviour of the per-document stages."""

    def get_document(self, payload: DocumentPayload) -> Optional[Document]:
        document = Document.objects.filter(pk=payload.document_id).first()
        if document is None:
            logger.warning(f"{self.kind.value}: document {payload.document_id} no longer exists")
        elif document.status == DocumentStatus.FAILED:
            logger.info(f"{self.kind.value}: document {payload.doc_hash[:12]} is FAILED; waiting for an explicit retry")
            return None
        return document

    def on_failure(self, payload: DocumentPayload, error: Exception) -> None:
        message = truncate_error(error)
        Document.objects.filter(pk=payload.document_id).update(
            status=DocumentStatus.FAILED,
            last_error=message,
        )
        self.progress.update(payload.scope, 'failed', 100, message=message)
        recompute_tender_progress(payload.tender_id)
        logger.error(f"{self.kind.value} failed for {payload.doc_hash[:12]}: {message}")


# =============================================================================
# Manifest
# =============================================================================

class ManifestStage(Stage):
    """Discover the documents inside an upload and queue their extraction."""
    kind = JobKind.MANIFEST

    def run(self, payload: ManifestPayload, priority: int = BASE_PRIORITY) -> None:
        upload = Upload.objects.filter(pk=payload.upload_id, tender_id=payload.tender_id).first()
        if upload is None:
            logger.warning(f"manifest: upload {payload.upload_id} missing or not in tender {payload.tender_id}")
            return

        with self.lock(str(upload.pk)) as lease:
            if lease is None:
                return
            self._discover(payload, upload)

    def _entries(self, upload: Upload, data: bytes):
        if upload.kind == UploadKind.ARCHIVE or looks_like_archive(upload.filename, data):
            return expand_archive(data)
        return [ArchiveEntry(path=upload.filename, data=data)]

    def _discover(self, payload: ManifestPayload, upload: Upload) -> None:
        Upload.objects.filter(pk=upload.pk).update(status=UploadStatus.PROCESSING, error=None)

        data = self.blobs.get(upload.bucket, upload.storage_key)
        entries = self._entries(upload, data)
        bucket = self.runtime.index_bucket

        manifest_documents = []
        to_queue = []

        for entry in entries:
            doc_hash = sha256_hex(entry.data)
            content_type = guess_content_type(entry.path)
            paths = document_storage_paths(
                bucket, payload.org_id, payload.tender_id, doc_hash, file_extension(entry.path) or '.bin'
            )
            stored_key = self.blobs.put(bucket, paths.raw_key, entry.data, content_type=content_type)
            if stored_key != paths.raw_key:
                paths = document_storage_paths(
                    bucket, payload.org_id, payload.tender_id, doc_hash, raw_key=stored_key
                )

            pdf_info = inspect_pdf(entry.data) if content_type == 'application/pdf' else None
            document = self._upsert_document(payload, upload, entry, doc_hash, content_type, paths, pdf_info)

            manifest_documents.append({
                'documentId': str(document.pk),
                'docHash': doc_hash,
                'filename': entry.path,
                'bytes': len(entry.data),
                'mime': content_type,
                'storage': paths.to_dict(),
                'status': document.status,
                'pages': pdf_info['pages'] if pdf_info else None,
                'hasText': pdf_info['hasText'] if pdf_info else None,
            })
            if document.status != DocumentStatus.READY:
                to_queue.append((document, paths))

        self.blobs.put(
            bucket,
            tender_manifest_key(payload.org_id, payload.tender_id),
            json.dumps({
                'uploadId': str(upload.pk),
                'generatedAt': datetime.now(timezone.utc).isoformat(),
                'documents': manifest_documents,
            }, indent=2).encode('utf-8'),
            content_type='application/json',
        )

        Upload.objects.filter(pk=upload.pk).update(status=UploadStatus.COMPLETED, error=None)

        for document, paths in sorted(to_queue, key=lambda item: item[0].filename):
            extract = ExtractPayload(
                org_id=payload.org_id,
                tender_id=payload.tender_id,
                document_id=str(document.pk),
                doc_hash=document.doc_hash,
                storage=paths,
                upload_id=str(upload.pk),
                filename=document.filename,
            )
            self.queue.enqueue(extract, priority=compute_priority(document.size_bytes, document.filename))
            self.progress.update(extract.scope, 'queued', 1, message='Queued for extraction')

        recompute_tender_progress(payload.tender_id)
        logger.info(
            f"Manifest for upload {upload.pk}: {len(manifest_documents)} document(s), "
            f"{len(to_queue)} queued"
        )

    def _upsert_document(self, payload, upload, entry, doc_hash, content_type, paths, pdf_info) -> Document:
        fields = {
            'title': entry.name,
            'filename': entry.path,
            'content_type': content_type,
            'size_bytes': len(entry.data),
            'bucket': paths.bucket,
            'raw_key': paths.raw_key,
            'source_upload': upload,
        }
        if pdf_info is not None:
            fields['page_count'] = pdf_info['pages']
            fields['has_text'] = pdf_info['hasText']

        with transaction.atomic():
            document, created = Document.objects.select_for_update().get_or_create(
                org_id=payload.org_id,
                tender_id=payload.tender_id,
                doc_hash=doc_hash,
                defaults=fields,
            )
            if not created and document.status != DocumentStatus.READY:
                for name, value in fields.items():
                    setattr(document, name, value)
                document.save()

        if document.status == DocumentStatus.FAILED:
            # A fresh upload of a failed document counts as an explicit retry
            document.reset_for_retry(DocumentStatus.PENDING)
        return document

    def on_failure(self, payload: ManifestPayload, error: Exception) -> None:
        Upload.objects.filter(pk=payload.upload_id).update(
            status=UploadStatus.FAILED,
            error=truncate_error(error),
        )
        logger.error(f"manifest failed for upload {payload.upload_id}: {error}")


# =============================================================================
# Extract
# =============================================================================

class ExtractStage(DocumentStage):
    kind = JobKind.EXTRACT

    def run(self, payload: ExtractPayload, priority: int = BASE_PRIORITY) -> None:
        with self.lock(payload.scope) as lease:
            if lease is None:
                return
            document = self.get_document(payload)
            if document is None:
                return

            storage = payload.storage
            if self.blobs.exists(storage.bucket, storage.extracted_key):
                pages = decode_pages(self.blobs.get(storage.bucket, storage.extracted_key))
                logger.info(f"extract: output exists for {payload.doc_hash[:12]}; skipping")
            else:
                document.advance(DocumentStatus.EXTRACTING)
                self.progress.update(payload.scope, 'extract', 15, message='Extracting text')

                data = self.blobs.get(storage.bucket, storage.raw_key)
                pages = extract_pages(data, document.filename, document.content_type)
                self.blobs.put(storage.bucket, storage.extracted_key, encode_pages(pages), content_type='application/gzip')

                Document.objects.filter(pk=document.pk).update(
                    page_count=len(pages),
                    has_text=any(pages),
                    size_bytes=len(data),
                )
                logger.info(f"extract: {payload.doc_hash[:12]} has {len(pages)} page(s)")

            document.advance(DocumentStatus.CHUNKING)
            self.queue.enqueue(successor(payload, ChunkPayload, extracted_pages=len(pages)), priority=priority)


# =============================================================================
# Chunk
# =============================================================================

class ChunkStage(DocumentStage):
    kind = JobKind.CHUNK

    def run(self, payload: ChunkPayload, priority: int = BASE_PRIORITY) -> None:
        with self.lock(payload.scope) as lease:
            if lease is None:
                return
            document = self.get_document(payload)
            if document is None:
                return

            storage = payload.storage
            if self.blobs.exists(storage.bucket, storage.chunks_key):
                count = len(decode_jsonl_gz(self.blobs.get(storage.bucket, storage.chunks_key)))
                logger.info(f"chunk: output exists for {payload.doc_hash[:12]}; skipping")
            else:
                document.advance(DocumentStatus.CHUNKING)
                self.progress.update(payload.scope, 'chunk', 30, message='Chunking text')

                pages = decode_pages(self.blobs.get(storage.bucket, storage.extracted_key))
                records = chunk_pages(pages, payload.doc_hash, self.runtime.chunk_size, self.runtime.chunk_overlap)
                self.blobs.put(
                    storage.bucket,
                    storage.chunks_key,
                    encode_jsonl_gz(r.to_dict() for r in records),
                    content_type='application/gzip',
                )
                count = len(records)
                logger.info(f"chunk: {payload.doc_hash[:12]} -> {count} chunk(s)")

            document.advance(DocumentStatus.EMBEDDING)
            self.queue.enqueue(successor(payload, EmbedPayload, chunk_count=count), priority=priority)


# =============================================================================
# Embed
# =============================================================================

class EmbedStage(DocumentStage):
    kind = JobKind.EMBED

    def run(self, payload: EmbedPayload, priority: int = BASE_PRIORITY) -> None:
        with self.lock(payload.scope) as lease:
            if lease is None:
                return
            document = self.get_document(payload)
            if document is None:
                return

            existing = DocumentSection.objects.filter(document=document).count()
            if existing > 0:
                logger.info(f"embed: {existing} section(s) exist for {payload.doc_hash[:12]}; skipping")
                count = existing
            else:
                count = self._embed(payload, document)

            document.advance(DocumentStatus.SUMMARIZING)
            self.queue.enqueue(successor(payload, SummaryPayload, section_count=count), priority=priority)

    def _embed(self, payload: EmbedPayload, document: Document) -> int:
        document.advance(DocumentStatus.EMBEDDING)
        storage = payload.storage
        records = [
            ChunkRecord.from_dict(r)
            for r in decode_jsonl_gz(self.blobs.get(storage.bucket, storage.chunks_key))
        ]

        def report(done: int, total: int, _result) -> None:
            self.progress.update(
                payload.scope,
                'embedding',
                40 + 50 * done / total,
                batchesDone=done,
                totalBatches=total,
                message=f"Embedding chunks ({done}/{total} batches)",
            )

        result = self.runtime.embedder.embed([r.text for r in records], on_batch=report)

        sections = [
            DocumentSection(
                document=document,
                section_index=i,
                page_start=record.page_start,
                page_end=record.page_end,
                heading=record.heading,
                text=record.text,
                embedding=result.vectors[i].tolist(),
                embedding_model=result.model,
            )
            for i, record in enumerate(records)
        ]

        with transaction.atomic():
            DocumentSection.objects.filter(document=document).delete()
            for start in range(0, len(sections), SECTION_INSERT_BATCH):
                DocumentSection.objects.bulk_create(sections[start:start + SECTION_INSERT_BATCH])

        logger.info(f"embed: stored {len(sections)} section(s) for {payload.doc_hash[:12]} with {result.model}")
        return len(sections)


# =============================================================================
# Summary
# =============================================================================

def build_abstract(sections) -> Optional[str]:
    """The first few section texts joined and capped."""
    texts = [s.text.strip() for s in sections[:ABSTRACT_SECTION_COUNT] if s.text.strip()]
    combined = ' '.join(texts)
    return combined[:ABSTRACT_MAX_CHARS] if combined else None


class SummaryStage(DocumentStage):
    kind = JobKind.SUMMARY

    def run(self, payload: SummaryPayload, priority: int = BASE_PRIORITY) -> None:
        with self.lock(payload.scope) as lease:
            if lease is None:
                return
            document = self.get_document(payload)
            if document is None:
                return

            storage = payload.storage
            if self.blobs.exists(storage.bucket, storage.summary_key):
                if not DocumentSection.objects.filter(document=document).exists():
                    self._fail_empty(payload, document)
                    return
                logger.info(f"summary: output exists for {payload.doc_hash[:12]}; skipping")
            else:
                self.progress.update(payload.scope, 'summary', 95, message='Summarizing')
                sections = list(
                    DocumentSection.objects.filter(document=document)
                    .order_by('page_start', 'section_index')[:SUMMARY_SECTION_COUNT]
                )
                abstract = build_abstract(sections)
                if abstract is None:
                    self._fail_empty(payload, document)
                    return

                summary = {
                    'abstract': abstract,
                    'sections': [
                        {'pageStart': s.page_start, 'pageEnd': s.page_end, 'heading': s.heading}
                        for s in sections
                    ],
                }
                self.blobs.put(
                    storage.bucket,
                    storage.summary_key,
                    json.dumps(summary).encode('utf-8'),
                    content_type='application/json',
                )
                DocumentSummary.objects.update_or_create(
                    document=document,
                    defaults={
                        'abstract': abstract,
                        'section_count': DocumentSection.objects.filter(document=document).count(),
                        'storage_key': storage.summary_key,
                    },
                )

            document.advance(DocumentStatus.READY)
            self.progress.update(payload.scope, 'ready', 100, message='Document ready')
            recompute_tender_progress(payload.tender_id)
            logger.info(f"summary: {payload.doc_hash[:12]} is READY")

    def _fail_empty(self, payload: SummaryPayload, document: Document) -> None:
        document.mark_failed(EMPTY_TEXT_ERROR)
        self.progress.update(payload.scope, 'failed', 100, message=EMPTY_TEXT_ERROR)
        recompute_tender_progress(payload.tender_id)
        logger.warning(f"summary: {payload.doc_hash[:12]} has no sections; marked FAILED")


# =============================================================================
# Artifact
# =============================================================================

class ArtifactStage(Stage):
    """Packaged index build; locking and phases live in ArtifactBuilder."""
    kind = JobKind.ARTIFACT

    def __init__(self, runtime):
        super().__init__(runtime)
        self.builder = ArtifactBuilder(runtime)

    def run(self, payload: ArtifactPayload, priority: int = BASE_PRIORITY) -> None:
        self.builder.build(payload)

    def on_failure(self, payload: ArtifactPayload, error: Exception) -> None:
        self.builder.mark_failed(payload, error)


STAGE_TYPES = {
    JobKind.MANIFEST: ManifestStage,
    JobKind.EXTRACT: ExtractStage,
    JobKind.CHUNK: ChunkStage,
    JobKind.EMBED: EmbedStage,
    JobKind.SUMMARY: SummaryStage,
    JobKind.ARTIFACT: ArtifactStage,
}


def build_stages(runtime) -> Dict[str, Stage]:
    return {kind.value: stage_type(runtime) for kind, stage_type in STAGE_TYPES.items()}


# =============================================================================
# Explicit operations
# =============================================================================

def document_paths(document: Document) -> StoragePaths:
    return document_storage_paths(
        document.bucket,
        document.org_id,
        document.tender_id,
        document.doc_hash,
        raw_key=document.raw_key,
    )


def retry_document(runtime, document: Document) -> Dict:
    """
    Re-queue a FAILED document at the first stage whose output is missing.

    Outputs are checked in order: extracted pages, chunks, sections, summary.

    Returns:
        {'queued': True, 'stage': kind} or {'queued': False, ...} when every
        output already exists

    Raises:
        DocumentNotFailedError: If the document is not FAILED
    """
    if document.status != DocumentStatus.FAILED:
        raise DocumentNotFailedError(document.status)

    blobs = runtime.blobs
    paths = document_paths(document)
    section_count = DocumentSection.objects.filter(document=document).count()

    if not blobs.exists(paths.bucket, paths.extracted_key):
        stage, status, payload_type, extra = 'extract', DocumentStatus.PENDING, ExtractPayload, {}
    elif not blobs.exists(paths.bucket, paths.chunks_key):
        stage, status, payload_type, extra = (
            'chunk', DocumentStatus.CHUNKING, ChunkPayload, {'extracted_pages': document.page_count or 0}
        )
    elif section_count == 0:
        stage, status, payload_type, extra = 'embed', DocumentStatus.EMBEDDING, EmbedPayload, {'chunk_count': 0}
    elif not blobs.exists(paths.bucket, paths.summary_key):
        stage, status, payload_type, extra = (
            'summary', DocumentStatus.SUMMARIZING, SummaryPayload, {'section_count': section_count}
        )
    else:
        return {
            'queued': False,
            'message': 'All artifacts already exist; nothing to retry.',
            'status': document.status,
        }

    payload = payload_type(
        org_id=document.org_id,
        tender_id=document.tender_id,
        document_id=str(document.pk),
        doc_hash=document.doc_hash,
        storage=paths,
        upload_id=str(document.source_upload_id) if document.source_upload_id else None,
        filename=document.filename,
        **extra,
    )
    document.reset_for_retry(status)
    runtime.queue.enqueue(payload, priority=compute_priority(document.size_bytes, document.filename))
    runtime.progress.update(payload.scope, 'queued', 1, message=f'Retry queued at {stage}')
    recompute_tender_progress(document.tender_id)

    logger.info(f"Retry of {document.doc_hash[:12]} queued at stage {stage}")
    return {'queued': True, 'stage': stage}


def ensure_index(runtime, upload: Upload, doc_hash_param: str, force_rebuild: bool = False) -> Dict:
    """
    Make sure a packaged index exists (or is being built) for an upload.

    The docHash is recomputed from the upload bytes; a difference from the
    requested hash is reported back as `mismatch`. Artifacts are looked up
    within the upload's own org and tender only.
    """
    data = runtime.blobs.get(upload.bucket, upload.storage_key)
    doc_hash = sha256_hex(data)
    mismatch = None if doc_hash == doc_hash_param else {'expected': doc_hash_param, 'actual': doc_hash}

    scope = index_scope(upload.org_id, upload.tender_id, doc_hash)
    existing = IndexArtifact.objects.filter(
        org_id=upload.org_id,
        tender_id=upload.tender_id,
        doc_hash=doc_hash,
    ).first()

    if existing is not None and not force_rebuild:
        if existing.status == ArtifactStatus.READY:
            return {
                'status': 'ready',
                'docHash': doc_hash,
                'artifact': {
                    'id': str(existing.pk),
                    'storageKey': existing.storage_key,
                    'updatedAt': existing.updated_at.isoformat(),
                    'version': existing.version,
                    'totalChunks': existing.total_chunks,
                },
                'mismatch': mismatch,
            }
        if existing.status == ArtifactStatus.BUILDING:
            snapshot = runtime.progress.read(scope)
            return {
                'status': 'building',
                'docHash': doc_hash,
                'progress': snapshot.to_dict() if snapshot else None,
                'mismatch': mismatch,
            }

    version = INDEX_ARTIFACT_VERSION
    if existing is not None:
        # READY artifacts are superseded, never rewritten
        version = existing.version + 1 if existing.status == ArtifactStatus.READY else existing.version

    IndexArtifact.objects.update_or_create(
        org_id=upload.org_id,
        tender_id=upload.tender_id,
        doc_hash=doc_hash,
        defaults={
            'upload': upload,
            'version': version,
            'status': ArtifactStatus.BUILDING,
            'error': None,
        },
    )

    runtime.progress.update(scope, 'queued', 1, batchesDone=0, totalBatches=0, message='Index build queued')
    runtime.queue.enqueue(
        ArtifactPayload(
            org_id=upload.org_id,
            tender_id=upload.tender_id,
            doc_hash=doc_hash,
            upload_id=str(upload.pk),
            bucket=upload.bucket,
            storage_key=upload.storage_key,
            filename=upload.filename,
            version=version,
            force=force_rebuild,
        ),
        priority=compute_priority(upload.size_bytes, upload.filename),
    )
    logger.info(f"Index build queued for {doc_hash[:12]} v{version} (force={force_rebuild})")

    return {'status': 'building', 'docHash': doc_hash, 'queued': True, 'mismatch': mismatch}
