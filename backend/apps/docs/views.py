"""
Upload and ingestion views.

Provides endpoints for:
- POST /api/uploads - Store a file or archive as a PENDING upload
- POST /api/uploads/<id>/complete - Queue manifest discovery for an upload
- GET  /api/tenders/<tenderId>/ingestion - Tender readiness rollup
- GET  /api/tenders/<tenderId>/docs/<docHash>/progress - Index progress
- POST /api/tenders/<tenderId>/docs/<docHash>/ensure-index - Build the packaged index
- POST /api/tenders/<tenderId>/docs/<docHash>/retry - Retry a FAILED document
"""
import json
import logging
import uuid

from django.conf import settings
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from apps.authn.audit import audit_indexing_queued, audit_indexing_retried, audit_upload_created
from apps.authn.middleware import auth_required
from apps.indexing.archive import looks_like_archive
from apps.indexing.extractor import guess_content_type, is_supported
from apps.indexing.payloads import ManifestPayload, index_scope
from apps.indexing.progress import describe_progress
from apps.indexing.runtime import get_runtime
from apps.indexing.stages import DocumentNotFailedError, ensure_index, recompute_tender_progress, retry_document
from .models import (
    ArtifactStatus,
    Document,
    DocumentStatus,
    IndexArtifact,
    TenderIngestion,
    Upload,
    UploadKind,
    UploadStatus,
)
from .storage import StorageError

logger = logging.getLogger(__name__)

DEFAULT_MAX_UPLOAD_SIZE = 50 * 1024 * 1024


def upload_storage_key(org_id: str, tender_id: str, upload_id: str, filename: str) -> str:
    safe_name = filename.replace('\\', '/').rsplit('/', 1)[-1] or 'upload'
    return f"org/{org_id}/tender/{tender_id}/uploads/{upload_id}/{safe_name}"


def parse_json_body(request):
    """Parsed JSON object body, {} when empty, None when malformed."""
    if not request.body:
        return {}
    try:
        body = json.loads(request.body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def get_tender_document(org_id: str, tender_id: str, doc_hash: str):
    return Document.objects.filter(org_id=org_id, tender_id=tender_id, doc_hash=doc_hash).first()


@csrf_exempt
@require_http_methods(["POST"])
@auth_required
def create_upload(request):
    """
    Store an uploaded file or zip archive.

    POST /api/uploads (multipart: file, tenderId)

    Returns:
        {"uploadId": "uuid", "status": "PENDING", "kind": "FILE", "filename": "..."}
    """
    principal = request.principal
    tender_id = (request.POST.get('tenderId') or '').strip()

    if not tender_id:
        return JsonResponse({'error': 'tenderId is required', 'code': 'MISSING_TENDER'}, status=400)
    if 'file' not in request.FILES:
        return JsonResponse({'error': 'No file provided', 'code': 'MISSING_FILE'}, status=400)

    uploaded_file = request.FILES['file']
    filename = uploaded_file.name
    max_size = int(getattr(settings, 'MAX_UPLOAD_SIZE', DEFAULT_MAX_UPLOAD_SIZE))

    if uploaded_file.size > max_size:
        return JsonResponse(
            {
                'error': f'File too large. Maximum size is {max_size // (1024 * 1024)}MB',
                'code': 'FILE_TOO_LARGE',
                'maxSize': max_size,
            },
            status=400
        )

    data = uploaded_file.read()
    is_archive = looks_like_archive(filename, data)
    if not is_archive and not is_supported(filename):
        return JsonResponse(
            {'error': 'Invalid file type. Allowed: PDF, TXT, MD, DOCX, ZIP', 'code': 'INVALID_FILE_TYPE'},
            status=400
        )

    runtime = get_runtime()
    upload_id = uuid.uuid4()
    key = upload_storage_key(principal.org_id, tender_id, str(upload_id), filename)
    content_type = 'application/zip' if is_archive else guess_content_type(filename)

    try:
        runtime.blobs.put(runtime.upload_bucket, key, data, content_type=content_type)
    except StorageError as e:
        logger.error(f"Storage error during upload: {e}")
        return JsonResponse({'error': 'Failed to store file', 'code': 'STORAGE_ERROR'}, status=500)

    upload = Upload.objects.create(
        id=upload_id,
        org_id=principal.org_id,
        tender_id=tender_id,
        user_id=principal.user_id,
        filename=filename,
        content_type=content_type,
        kind=UploadKind.ARCHIVE if is_archive else UploadKind.FILE,
        size_bytes=len(data),
        bucket=runtime.upload_bucket,
        storage_key=key,
    )
    logger.info(f"Upload created: {upload.pk} ({filename}, {len(data)} bytes, {upload.kind})")
    audit_upload_created(request, str(upload.pk), filename, len(data))

    return JsonResponse({
        'uploadId': str(upload.pk),
        'status': upload.status,
        'kind': upload.kind,
        'filename': upload.filename,
    }, status=201)


@csrf_exempt
@require_http_methods(["POST"])
@auth_required
def complete_upload(request, upload_id):
    """
    Queue manifest discovery for an upload.

    POST /api/uploads/<uploadId>/complete
    """
    upload = Upload.objects.filter(pk=upload_id, org_id=request.principal.org_id).first()
    if upload is None:
        return JsonResponse({'error': 'Upload not found'}, status=404)

    if upload.status == UploadStatus.COMPLETED:
        return JsonResponse({'uploadId': str(upload.pk), 'status': upload.status, 'queued': False})

    runtime = get_runtime()
    job = runtime.queue.enqueue(
        ManifestPayload(org_id=upload.org_id, tender_id=upload.tender_id, upload_id=str(upload.pk))
    )
    audit_indexing_queued(request, str(upload.pk), 'manifest')

    return JsonResponse({
        'uploadId': str(upload.pk),
        'status': upload.status,
        'jobId': str(job.pk),
        'queued': True,
    }, status=202)


@csrf_exempt
@require_http_methods(["GET"])
@auth_required
def tender_ingestion(request, tender_id):
    """
    GET /api/tenders/<tenderId>/ingestion

    Returns:
        {"tenderId", "status": PENDING|PARTIAL|READY, "readyDocs", "totalDocs", "updatedAt", "documents": [...]}
    """
    documents = Document.objects.filter(org_id=request.principal.org_id, tender_id=tender_id)
    if not documents.exists() and not TenderIngestion.objects.filter(tender_id=tender_id).exists():
        return JsonResponse({'error': 'Tender not found'}, status=404)

    ingestion = recompute_tender_progress(tender_id)
    response = ingestion.to_dict()
    response['documents'] = [
        {
            'documentId': str(doc.pk),
            'docHash': doc.doc_hash,
            'filename': doc.filename,
            'status': doc.status,
            'pageCount': doc.page_count,
            'error': doc.last_error,
        }
        for doc in documents
    ]
    return JsonResponse(response)


@csrf_exempt
@require_http_methods(["GET"])
@auth_required
def document_progress(request, tender_id, doc_hash):
    """
    GET /api/tenders/<tenderId>/docs/<docHash>/progress

    Returns:
        {"stage": not_started|building|complete|failed, "percent", "message", "docHash"}
    """
    runtime = get_runtime()
    snapshot = runtime.progress.read(index_scope(request.principal.org_id, tender_id, doc_hash))

    artifact = IndexArtifact.objects.filter(
        doc_hash=doc_hash, tender_id=tender_id, org_id=request.principal.org_id,
    ).first()
    status = artifact.status if artifact else None

    if status is None:
        document = get_tender_document(request.principal.org_id, tender_id, doc_hash)
        if document is not None:
            if document.status == DocumentStatus.READY:
                status = ArtifactStatus.READY
            elif document.status == DocumentStatus.FAILED:
                status = ArtifactStatus.FAILED
            else:
                status = ArtifactStatus.BUILDING

    return JsonResponse(describe_progress(snapshot, status, doc_hash))


@csrf_exempt
@require_http_methods(["POST"])
@auth_required
def ensure_document_index(request, tender_id, doc_hash):
    """
    POST /api/tenders/<tenderId>/docs/<docHash>/ensure-index
    Body: {"uploadId": "uuid", "forceRebuild": false}

    Returns:
        {"status": "ready", "artifact": {...}} or {"status": "building", ...}
    """
    body = parse_json_body(request)
    if body is None:
        return JsonResponse({'error': 'Invalid JSON'}, status=400)

    upload_id = body.get('uploadId')
    if not upload_id:
        return JsonResponse({'error': 'uploadId is required'}, status=400)

    try:
        upload_uuid = uuid.UUID(str(upload_id))
    except ValueError:
        return JsonResponse({'error': 'uploadId must be a UUID'}, status=400)

    upload = Upload.objects.filter(
        pk=upload_uuid, org_id=request.principal.org_id, tender_id=tender_id,
    ).first()
    if upload is None:
        return JsonResponse({'error': 'Upload not found'}, status=404)

    try:
        result = ensure_index(get_runtime(), upload, doc_hash, force_rebuild=bool(body.get('forceRebuild')))
    except StorageError as e:
        logger.exception(f"ensure-index could not read upload {upload.pk}")
        return JsonResponse({'error': f'Failed to read upload: {e}'}, status=500)

    if result.get('queued'):
        audit_indexing_queued(request, result['docHash'], 'artifact')
    return JsonResponse(result, status=202 if result['status'] == 'building' else 200)


@csrf_exempt
@require_http_methods(["POST"])
@auth_required
def retry_document_view(request, tender_id, doc_hash):
    """
    POST /api/tenders/<tenderId>/docs/<docHash>/retry

    Returns:
        {"queued": true, "stage": "chunk"} or {"queued": false, "message": ...}
    """
    document = get_tender_document(request.principal.org_id, tender_id, doc_hash)
    if document is None:
        return JsonResponse({'error': 'Document not found'}, status=404)

    try:
        result = retry_document(get_runtime(), document)
    except DocumentNotFailedError as e:
        return JsonResponse({'error': str(e), 'status': e.status}, status=409)

    if result.get('queued'):
        audit_indexing_retried(request, doc_hash, result.get('stage'))
    return JsonResponse(result, status=202 if result.get('queued') else 200)
