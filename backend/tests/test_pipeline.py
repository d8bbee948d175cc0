"""
End-to-end tests for the ingestion pipeline and the artifact build.

Jobs are drained in-process against fakeredis and a temporary blob store,
with fallback embeddings so results are deterministic.
"""
import io
import time
import uuid
import zipfile

import pytest
from conftest import drain

from apps.docs.models import (
    ArtifactStatus,
    Document,
    DocumentStatus,
    DocumentSummary,
    IndexArtifact,
    TenderIngestion,
    TenderReadiness,
    Upload,
    UploadKind,
    UploadStatus,
)
from apps.docs.views import upload_storage_key
from apps.indexing.artifacts import parse_artifact_storage_key
from apps.indexing.builder import ArtifactBuilder
from apps.indexing.embedder import EmbeddingError, fallback_embedding
from apps.indexing.extractor import sha256_hex
from apps.indexing.locks import LockError, stage_lock_key
from apps.indexing.models import DocumentSection, JobKind, JobStatus, PipelineJob
from apps.indexing.payloads import ArtifactPayload, ExtractPayload, ManifestPayload, index_scope
from apps.indexing.progress import ProgressSnapshot, ProgressStore, describe_progress
from apps.indexing.stages import (
    EMPTY_TEXT_ERROR,
    DocumentNotFailedError,
    build_stages,
    document_paths,
    ensure_index,
    readiness_for,
    retry_document,
)
from apps.indexing.worker import run_job
from apps.rag.retrieval import passages_from_matches, retrieve_sections

ALPHA_GAMMA = b"Alpha Beta\fGamma Delta"


def scope_of(doc_hash: str, org_id: str = 'org-1', tender_id: str = 'tender-1') -> str:
    return index_scope(org_id, tender_id, doc_hash)


def store_upload(runtime, data: bytes, filename: str, tender_id: str = 'tender-1', org_id: str = 'org-1') -> Upload:
    upload_id = uuid.uuid4()
    key = upload_storage_key(org_id, tender_id, str(upload_id), filename)
    runtime.blobs.put(runtime.upload_bucket, key, data)
    return Upload.objects.create(
        id=upload_id,
        org_id=org_id,
        tender_id=tender_id,
        user_id='user-1',
        filename=filename,
        content_type='application/zip' if filename.endswith('.zip') else 'text/plain',
        kind=UploadKind.ARCHIVE if filename.endswith('.zip') else UploadKind.FILE,
        size_bytes=len(data),
        bucket=runtime.upload_bucket,
        storage_key=key,
    )


def zip_bytes(files: dict) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as archive:
        for name, data in files.items():
            archive.writestr(name, data)
    return buffer.getvalue()


def ingest(runtime, upload: Upload) -> int:
    runtime.queue.enqueue(ManifestPayload(upload.org_id, upload.tender_id, str(upload.pk)))
    return drain(runtime)


def run_next(runtime, kind: JobKind) -> bool:
    job = runtime.queue.claim(kind.value)
    assert job is not None, f"no queued {kind.value} job"
    return run_job(build_stages(runtime), runtime.queue, job)


# ============================================================================
# Packaged index (artifact) path
# ============================================================================

@pytest.mark.django_db
class TestArtifactBuild:
    """ensure_index + the artifact job."""

    def test_two_page_text_builds_searchable_index(self, runtime, tmp_path):
        upload = store_upload(runtime, ALPHA_GAMMA, 'tender.txt')
        doc_hash = sha256_hex(ALPHA_GAMMA)

        result = ensure_index(runtime, upload, doc_hash)
        assert result['status'] == 'building'
        assert result['queued'] is True
        assert result['mismatch'] is None

        drain(runtime)

        artifact = IndexArtifact.objects.get(doc_hash=doc_hash)
        assert artifact.status == ArtifactStatus.READY
        assert artifact.total_chunks == 2
        assert artifact.total_pages == 2
        assert parse_artifact_storage_key(artifact.storage_key)['version'] == 1

        loaded = runtime.artifacts.load(artifact.storage_key, scope=scope_of(doc_hash))
        query = runtime.embedder.embed_query("Alpha Beta", model=loaded.embedding_model)
        passages = passages_from_matches(loaded, runtime.artifacts.search(loaded, query, 1))

        assert len(passages) == 1
        assert passages[0].text == "Alpha Beta"
        assert passages[0].page_start == 1
        assert passages[0].doc_name == 'tender.txt'

        assert runtime.progress.read(scope_of(doc_hash)).phase == 'ready'
        assert runtime.progress.read_resume(scope_of(doc_hash)) is None
        assert list((tmp_path / 'workspace').iterdir()) == []

    def test_ready_index_is_not_rebuilt(self, runtime):
        upload = store_upload(runtime, ALPHA_GAMMA, 'tender.txt')
        doc_hash = sha256_hex(ALPHA_GAMMA)
        ensure_index(runtime, upload, doc_hash)
        drain(runtime)

        result = ensure_index(runtime, upload, doc_hash)

        assert result['status'] == 'ready'
        assert result['artifact']['totalChunks'] == 2
        assert not PipelineJob.objects.filter(status=JobStatus.QUEUED).exists()

    def test_force_rebuild_supersedes_version(self, runtime):
        upload = store_upload(runtime, ALPHA_GAMMA, 'tender.txt')
        doc_hash = sha256_hex(ALPHA_GAMMA)
        ensure_index(runtime, upload, doc_hash)
        drain(runtime)
        first_key = IndexArtifact.objects.get(doc_hash=doc_hash).storage_key

        ensure_index(runtime, upload, doc_hash, force_rebuild=True)
        drain(runtime)

        artifact = IndexArtifact.objects.get(doc_hash=doc_hash)
        assert artifact.version == 2
        assert artifact.storage_key != first_key
        assert runtime.blobs.exists(runtime.index_bucket, first_key)

    def test_building_index_is_not_queued_twice(self, runtime):
        upload = store_upload(runtime, ALPHA_GAMMA, 'tender.txt')
        doc_hash = sha256_hex(ALPHA_GAMMA)
        ensure_index(runtime, upload, doc_hash)

        result = ensure_index(runtime, upload, doc_hash)

        assert result['status'] == 'building'
        assert 'queued' not in result
        assert result['progress']['phase'] == 'queued'
        assert PipelineJob.objects.filter(kind='artifact').count() == 1

    def test_hash_mismatch_is_reported(self, runtime):
        upload = store_upload(runtime, ALPHA_GAMMA, 'tender.txt')

        result = ensure_index(runtime, upload, 'not-the-hash')

        assert result['docHash'] == sha256_hex(ALPHA_GAMMA)
        assert result['mismatch'] == {'expected': 'not-the-hash', 'actual': sha256_hex(ALPHA_GAMMA)}

    def test_corrupt_single_file_marks_artifact_failed(self, runtime):
        data = b"not a word document"
        upload = store_upload(runtime, data, 'broken.docx')
        doc_hash = sha256_hex(data)

        ensure_index(runtime, upload, doc_hash)
        drain(runtime)

        artifact = IndexArtifact.objects.get(doc_hash=doc_hash)
        assert artifact.status == ArtifactStatus.FAILED
        assert artifact.error
        assert runtime.progress.read(scope_of(doc_hash)).phase == 'failed'
        assert PipelineJob.objects.get(kind='artifact').status == JobStatus.FAILED

    def test_archive_skips_unreadable_members(self, runtime):
        data = zip_bytes({
            'docs/scope.txt': "Scope of works",
            'docs/broken.docx': b"not a word document",
            '__MACOSX/docs/._scope.txt': "junk",
        })
        upload = store_upload(runtime, data, 'bundle.zip')

        ensure_index(runtime, upload, sha256_hex(data))
        drain(runtime)

        artifact = IndexArtifact.objects.get(doc_hash=sha256_hex(data))
        assert artifact.status == ArtifactStatus.READY
        loaded = runtime.artifacts.load(artifact.storage_key, scope=scope_of(artifact.doc_hash))
        assert [f['path'] for f in loaded.manifest['files']] == ['docs/broken.docx', 'docs/scope.txt']
        assert loaded.manifest['files'][0]['skipped'] is True
        assert [c['text'] for c in loaded.chunks] == ["Scope of works"]

    def test_retried_build_resumes_embedded_batches(self, runtime, monkeypatch):
        """A provider failure mid-build keeps the batches embedded so far."""
        data = b"one two three four five six seven eight"
        upload = store_upload(runtime, data, 'scope.txt')
        doc_hash = sha256_hex(data)
        runtime.embedder.batch_size = 1

        original = runtime.embedder.embed_batch
        calls = []

        def flaky(texts, force_fallback=False):
            calls.append(list(texts))
            if len(calls) == 2:
                raise EmbeddingError("Embedding API returned 503: overloaded")
            return original(texts, force_fallback=force_fallback)

        monkeypatch.setattr(runtime.embedder, 'embed_batch', flaky)

        ensure_index(runtime, upload, doc_hash)
        assert run_next(runtime, JobKind.ARTIFACT) is False
        assert runtime.progress.read_resume(scope_of(doc_hash)).batchesProcessed == 1

        drain(runtime)

        artifact = IndexArtifact.objects.get(doc_hash=doc_hash)
        assert artifact.status == ArtifactStatus.READY
        assert artifact.total_chunks == 3
        # 1 good + 1 failed on the first attempt, then only the 2 missing batches
        assert len(calls) == 4

    def test_lost_index_lock_stops_embedding(self, runtime, monkeypatch):
        data = b"one two three four five six seven eight"
        upload = store_upload(runtime, data, 'scope.txt')
        runtime.embedder.batch_size = 1
        monkeypatch.setattr('apps.indexing.builder.INDEX_LOCK_HEARTBEAT_MS', 10)
        monkeypatch.setattr(runtime.locks, 'extend', lambda key, token, ttl_ms: False)

        original = runtime.embedder.embed_batch
        embedded = []

        def slow(texts, force_fallback=False):
            time.sleep(0.2)
            embedded.append(list(texts))
            return original(texts, force_fallback=force_fallback)

        monkeypatch.setattr(runtime.embedder, 'embed_batch', slow)
        ensure_index(runtime, upload, sha256_hex(data))
        payload = ArtifactPayload.from_dict(PipelineJob.objects.get(kind='artifact').payload)

        with pytest.raises(LockError):
            ArtifactBuilder(runtime).build(payload)

        # three chunks, but the lease is gone after three missed 10ms heartbeats
        assert len(embedded) < 3

    def test_heartbeat_keeps_running_job_fresh(self, runtime, monkeypatch):
        data = b"one two three four five six seven eight"
        upload = store_upload(runtime, data, 'scope.txt')
        runtime.embedder.batch_size = 1
        monkeypatch.setattr('apps.indexing.builder.INDEX_LOCK_HEARTBEAT_MS', 10)
        monkeypatch.setattr('apps.indexing.builder.close_old_connections', lambda: None)
        monkeypatch.setattr(runtime.locks, 'extend', lambda key, token, ttl_ms: True)
        touched = []
        monkeypatch.setattr(runtime.queue, 'touch', touched.append)

        original = runtime.embedder.embed_batch

        def slow(texts, force_fallback=False):
            time.sleep(0.05)
            return original(texts, force_fallback=force_fallback)

        monkeypatch.setattr(runtime.embedder, 'embed_batch', slow)
        ensure_index(runtime, upload, sha256_hex(data))
        payload = ArtifactPayload.from_dict(PipelineJob.objects.get(kind='artifact').payload)

        artifact = ArtifactBuilder(runtime).build(payload)

        assert artifact.status == ArtifactStatus.READY
        assert touched
        assert set(touched) == {payload.job_key}


# ============================================================================
# Tenant isolation
# ============================================================================

@pytest.mark.django_db
class TestArtifactIsolation:
    """The same bytes uploaded by two organizations are indexed separately."""

    def build_for_both(self, runtime):
        first = store_upload(runtime, ALPHA_GAMMA, 'tender.txt', org_id='org-1')
        second = store_upload(runtime, ALPHA_GAMMA, 'tender.txt', org_id='org-2')
        doc_hash = sha256_hex(ALPHA_GAMMA)
        ensure_index(runtime, first, doc_hash)
        drain(runtime)
        result = ensure_index(runtime, second, doc_hash)
        drain(runtime)
        return first, second, doc_hash, result

    def test_second_org_gets_its_own_artifact(self, runtime):
        _, _, doc_hash, result = self.build_for_both(runtime)

        assert result['status'] == 'building'
        assert result['queued'] is True

        mine = IndexArtifact.objects.get(org_id='org-1', doc_hash=doc_hash)
        theirs = IndexArtifact.objects.get(org_id='org-2', doc_hash=doc_hash)
        assert mine.pk != theirs.pk
        assert mine.status == theirs.status == ArtifactStatus.READY
        assert parse_artifact_storage_key(mine.storage_key)['orgId'] == 'org-1'
        assert parse_artifact_storage_key(theirs.storage_key)['orgId'] == 'org-2'

    def test_force_rebuild_leaves_other_org_untouched(self, runtime):
        _, second, doc_hash, _ = self.build_for_both(runtime)
        mine = IndexArtifact.objects.get(org_id='org-1', doc_hash=doc_hash)

        ensure_index(runtime, second, doc_hash, force_rebuild=True)
        drain(runtime)

        unchanged = IndexArtifact.objects.get(pk=mine.pk)
        assert unchanged.org_id == 'org-1'
        assert unchanged.version == 1
        assert unchanged.storage_key == mine.storage_key
        assert IndexArtifact.objects.get(org_id='org-2', doc_hash=doc_hash).version == 2

    def test_progress_is_kept_per_org(self, runtime):
        first = store_upload(runtime, ALPHA_GAMMA, 'tender.txt', org_id='org-1')
        second = store_upload(runtime, ALPHA_GAMMA, 'tender.txt', org_id='org-2')
        doc_hash = sha256_hex(ALPHA_GAMMA)
        ensure_index(runtime, first, doc_hash)
        drain(runtime)

        ensure_index(runtime, second, doc_hash)

        assert runtime.progress.read(scope_of(doc_hash, org_id='org-1')).phase == 'ready'
        assert runtime.progress.read(scope_of(doc_hash, org_id='org-2')).phase == 'queued'

    def test_cached_artifacts_are_kept_per_org(self, runtime):
        self.build_for_both(runtime)
        doc_hash = sha256_hex(ALPHA_GAMMA)
        mine = IndexArtifact.objects.get(org_id='org-1', doc_hash=doc_hash)
        theirs = IndexArtifact.objects.get(org_id='org-2', doc_hash=doc_hash)

        loaded = runtime.artifacts.load(mine.storage_key, scope=scope_of(doc_hash, org_id='org-1'))

        assert runtime.artifacts.get_cached(scope_of(doc_hash, org_id='org-2')) is None
        assert runtime.artifacts.load(theirs.storage_key, scope=scope_of(doc_hash, org_id='org-2')) is not loaded


# ============================================================================
# Incremental (per-document stage) path
# ============================================================================

@pytest.mark.django_db
class TestIncrementalPipeline:
    """manifest -> extract -> chunk -> embed -> summary."""

    def test_single_file_reaches_ready(self, runtime):
        upload = store_upload(runtime, ALPHA_GAMMA, 'tender.txt')

        ingest(runtime, upload)

        document = Document.objects.get(tender_id='tender-1')
        assert document.status == DocumentStatus.READY
        assert document.doc_hash == sha256_hex(ALPHA_GAMMA)
        assert document.page_count == 2
        assert document.sections.count() == 2
        assert DocumentSummary.objects.get(document=document).abstract == "Alpha Beta Gamma Delta"

        upload.refresh_from_db()
        assert upload.status == UploadStatus.COMPLETED

        ingestion = TenderIngestion.objects.get(tender_id='tender-1')
        assert ingestion.status == TenderReadiness.READY
        assert (ingestion.ready_docs, ingestion.total_docs) == (1, 1)
        assert runtime.progress.read(scope_of(document.doc_hash)).phase == 'ready'

        paths = document_paths(document)
        for key in (paths.raw_key, paths.extracted_key, paths.chunks_key, paths.summary_key):
            assert runtime.blobs.exists(paths.bucket, key)

    def test_sections_are_searchable(self, runtime):
        ingest(runtime, store_upload(runtime, ALPHA_GAMMA, 'tender.txt'))
        document = Document.objects.get(tender_id='tender-1')

        passages = retrieve_sections(document, fallback_embedding("Gamma Delta"), 1)

        assert [p.page_start for p in passages] == [2]
        assert passages[0].text == "Gamma Delta"

    def test_archive_creates_one_document_per_file(self, runtime):
        data = zip_bytes({
            'b/specs.txt': "Technical specification",
            'a/instructions.md': "Instructions to bidders",
            '.hidden/notes.txt': "ignored",
            'drawing.dwg': b"\x00\x01",
        })

        ingest(runtime, store_upload(runtime, data, 'bundle.zip'))

        documents = Document.objects.filter(tender_id='tender-1').order_by('filename')
        assert [d.filename for d in documents] == ['a/instructions.md', 'b/specs.txt']
        assert all(d.status == DocumentStatus.READY for d in documents)
        assert documents[0].title == 'instructions.md'

    def test_reprocessing_is_idempotent(self, runtime):
        upload = store_upload(runtime, ALPHA_GAMMA, 'tender.txt')
        ingest(runtime, upload)
        document = Document.objects.get(tender_id='tender-1')
        section_ids = set(document.sections.values_list('pk', flat=True))

        processed = ingest(runtime, upload)

        assert processed == 1  # only the manifest job; READY documents are not re-queued
        assert Document.objects.filter(tender_id='tender-1').count() == 1
        assert set(document.sections.values_list('pk', flat=True)) == section_ids

    def test_replayed_stage_skips_existing_output(self, runtime):
        upload = store_upload(runtime, ALPHA_GAMMA, 'tender.txt')
        ingest(runtime, upload)
        document = Document.objects.get(tender_id='tender-1')
        paths = document_paths(document)
        extracted = runtime.blobs.get(paths.bucket, paths.extracted_key)

        runtime.queue.enqueue(ExtractPayload(
            org_id='org-1', tender_id='tender-1', document_id=str(document.pk),
            doc_hash=document.doc_hash, storage=paths, upload_id=str(upload.pk), filename=document.filename,
        ))
        drain(runtime)

        document.refresh_from_db()
        assert document.status == DocumentStatus.READY
        assert runtime.blobs.get(paths.bucket, paths.extracted_key) == extracted
        assert document.sections.count() == 2

    def test_document_without_text_fails(self, runtime):
        ingest(runtime, store_upload(runtime, b"   \f \n ", 'blank.txt'))

        document = Document.objects.get(tender_id='tender-1')
        assert document.status == DocumentStatus.FAILED
        assert document.last_error == EMPTY_TEXT_ERROR
        assert TenderIngestion.objects.get(tender_id='tender-1').status == TenderReadiness.PENDING

    def test_corrupt_document_fails_permanently(self, runtime):
        ingest(runtime, store_upload(runtime, b"not a word document", 'broken.docx'))

        document = Document.objects.get(tender_id='tender-1')
        assert document.status == DocumentStatus.FAILED
        assert document.last_error
        assert PipelineJob.objects.get(kind='extract').status == JobStatus.FAILED
        assert runtime.progress.read(scope_of(document.doc_hash)).phase == 'failed'

    def test_partial_tender(self, runtime):
        data = zip_bytes({'good.txt': "Scope of works", 'broken.docx': b"not a word document"})

        ingest(runtime, store_upload(runtime, data, 'bundle.zip'))

        ingestion = TenderIngestion.objects.get(tender_id='tender-1')
        assert ingestion.status == TenderReadiness.PARTIAL
        assert (ingestion.ready_docs, ingestion.total_docs) == (1, 2)

    def test_reupload_of_failed_document_resets_it(self, runtime):
        data = b"not a word document"
        ingest(runtime, store_upload(runtime, data, 'broken.docx'))

        runtime.queue.enqueue(ManifestPayload('org-1', 'tender-1', str(store_upload(runtime, data, 'broken.docx').pk)))
        run_next(runtime, JobKind.MANIFEST)

        document = Document.objects.get(tender_id='tender-1')
        assert document.status == DocumentStatus.PENDING
        assert document.last_error is None
        assert PipelineJob.objects.filter(kind='extract', status=JobStatus.QUEUED).exists()

    def test_contended_stage_lock_skips_job(self, runtime):
        upload = store_upload(runtime, ALPHA_GAMMA, 'tender.txt')
        runtime.queue.enqueue(ManifestPayload('org-1', 'tender-1', str(upload.pk)))
        run_next(runtime, JobKind.MANIFEST)
        doc_hash = sha256_hex(ALPHA_GAMMA)
        runtime.locks.acquire(stage_lock_key(scope_of(doc_hash), 'extract'), 60_000)

        assert run_next(runtime, JobKind.EXTRACT) is True

        assert Document.objects.get(doc_hash=doc_hash).status == DocumentStatus.PENDING
        assert not PipelineJob.objects.filter(kind='chunk').exists()

    def test_failed_document_ignores_stale_jobs(self, runtime):
        upload = store_upload(runtime, ALPHA_GAMMA, 'tender.txt')
        runtime.queue.enqueue(ManifestPayload('org-1', 'tender-1', str(upload.pk)))
        run_next(runtime, JobKind.MANIFEST)
        document = Document.objects.get(tender_id='tender-1')
        document.mark_failed("cancelled")

        drain(runtime)

        document.refresh_from_db()
        assert document.status == DocumentStatus.FAILED
        assert not PipelineJob.objects.filter(kind='chunk').exists()


# ============================================================================
# Retry
# ============================================================================

@pytest.mark.django_db
class TestRetryDocument:
    """Retry resumes at the first stage whose output is missing."""

    def ready_document(self, runtime):
        ingest(runtime, store_upload(runtime, ALPHA_GAMMA, 'tender.txt'))
        return Document.objects.get(tender_id='tender-1')

    def test_only_failed_documents(self, runtime):
        document = self.ready_document(runtime)

        with pytest.raises(DocumentNotFailedError) as exc_info:
            retry_document(runtime, document)

        assert exc_info.value.status == DocumentStatus.READY

    @pytest.mark.parametrize('missing, stage, status', [
        ('extracted_key', 'extract', DocumentStatus.PENDING),
        ('chunks_key', 'chunk', DocumentStatus.CHUNKING),
        ('sections', 'embed', DocumentStatus.EMBEDDING),
        ('summary_key', 'summary', DocumentStatus.SUMMARIZING),
    ])
    def test_resumes_at_first_missing_output(self, runtime, missing, stage, status):
        document = self.ready_document(runtime)
        paths = document_paths(document)
        if missing == 'sections':
            DocumentSection.objects.filter(document=document).delete()
        else:
            runtime.blobs.delete(paths.bucket, getattr(paths, missing))
        document.mark_failed("boom")

        result = retry_document(runtime, document)

        assert result == {'queued': True, 'stage': stage}
        document.refresh_from_db()
        assert document.status == status
        assert document.last_error is None
        assert PipelineJob.objects.filter(kind=stage, status=JobStatus.QUEUED).exists()

    def test_retry_completes_document(self, runtime):
        document = self.ready_document(runtime)
        paths = document_paths(document)
        runtime.blobs.delete(paths.bucket, paths.summary_key)
        document.mark_failed("boom")

        retry_document(runtime, document)
        drain(runtime)

        document.refresh_from_db()
        assert document.status == DocumentStatus.READY

    def test_nothing_to_retry(self, runtime):
        document = self.ready_document(runtime)
        document.mark_failed("boom")

        result = retry_document(runtime, document)

        assert result['queued'] is False
        assert result['status'] == DocumentStatus.FAILED


# ============================================================================
# Progress and readiness
# ============================================================================

class TestReadiness:

    @pytest.mark.parametrize('ready, total, expected', [
        (0, 0, TenderReadiness.PENDING),
        (0, 5, TenderReadiness.PENDING),
        (1, 10, TenderReadiness.PENDING),
        (2, 10, TenderReadiness.PARTIAL),
        (9, 10, TenderReadiness.PARTIAL),
        (10, 10, TenderReadiness.READY),
    ])
    def test_readiness_for(self, ready, total, expected):
        assert readiness_for(ready, total, threshold=0.2) == expected

    def test_threshold_from_settings(self, settings):
        settings.PARTIAL_READY_THRESHOLD = 0.5

        assert readiness_for(2, 10) == TenderReadiness.PENDING
        assert readiness_for(5, 10) == TenderReadiness.PARTIAL


class TestProgress:

    def test_snapshot_clamps_percent(self):
        assert ProgressSnapshot(docHash='h', phase='embedding', percent=140).percent == 100
        assert ProgressSnapshot(docHash='h', phase='embedding', percent=-3).percent == 0

    def test_unknown_phase_rejected(self):
        with pytest.raises(ValueError):
            ProgressSnapshot(docHash='h', phase='uploading')

    def test_store_round_trip_and_publish(self, redis_client):
        published = []
        store = ProgressStore(redis_client, ttl_seconds=60, publish=lambda scope, s: published.append((scope, s.phase)))

        store.update('org-1:tender-1:h', 'embedding', 55.4, batchesDone=3, totalBatches=6)

        snapshot = store.read('org-1:tender-1:h')
        assert snapshot.docHash == 'h'
        assert snapshot.percent == 55
        assert snapshot.batchesDone == 3
        assert published == [('org-1:tender-1:h', 'embedding')]
        assert 0 < redis_client.ttl('progress:index:org-1:tender-1:h') <= 60

    def test_orgs_do_not_share_progress(self, redis_client):
        store = ProgressStore(redis_client)

        store.update(index_scope('org-1', 'tender-1', 'h'), 'ready', 100)

        assert store.read(index_scope('org-2', 'tender-1', 'h')) is None
        assert store.read(index_scope('org-1', 'tender-2', 'h')) is None
        assert store.read(index_scope('org-1', 'tender-1', 'h')).phase == 'ready'

    def test_unreadable_snapshot_is_ignored(self, redis_client):
        redis_client.set('progress:index:o:t:h', 'not json')

        assert ProgressStore(redis_client).read('o:t:h') is None

    @pytest.mark.parametrize('phase, stage, percent', [
        ('ready', 'complete', 100),
        ('failed', 'failed', 40),
        ('embedding', 'building', 40),
    ])
    def test_describe_snapshot(self, phase, stage, percent):
        snapshot = ProgressSnapshot(docHash='h', phase=phase, percent=40, message='m')

        described = describe_progress(snapshot, None, 'h')

        assert described == {'stage': stage, 'percent': percent, 'message': 'm', 'docHash': 'h'}

    @pytest.mark.parametrize('status, stage, percent', [
        (None, 'not_started', 0),
        ('READY', 'complete', 100),
        ('FAILED', 'failed', 0),
        ('BUILDING', 'building', 0),
    ])
    def test_describe_without_snapshot(self, status, stage, percent):
        described = describe_progress(None, status, 'h')

        assert described['stage'] == stage
        assert described['percent'] == percent
