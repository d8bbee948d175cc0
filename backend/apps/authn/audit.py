"""
Audit logging for security and compliance.

Provides structured JSON logging for key events without exposing sensitive
content (question text and document contents are never logged).
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Dedicated audit logger
audit_logger = logging.getLogger('audit')


class AuditEvent:
    """Standard audit event types."""
    # Upload events
    UPLOAD_CREATED = 'upload.created'
    UPLOAD_COMPLETED = 'upload.completed'

    # Indexing events
    INDEXING_QUEUED = 'indexing.queued'
    INDEXING_COMPLETED = 'indexing.completed'
    INDEXING_FAILED = 'indexing.failed'
    INDEXING_RETRIED = 'indexing.retried'

    # Query events
    RAG_QUERY = 'rag.query'
    RAG_BRIEF = 'rag.brief'

    # Entitlement events
    PLAN_DENIED = 'plan.denied'


def get_client_ip(request) -> str:
    """Extract client IP from request, handling proxies."""
    x_forwarded_for = request.META.get('HTTP_X_FORWARDED_FOR')
    if x_forwarded_for:
        return x_forwarded_for.split(',')[0].strip()
    return request.META.get('REMOTE_ADDR', 'unknown')


def get_request_id(request) -> str:
    """Get or generate a request ID for correlation."""
    request_id = getattr(request, 'request_id', None)
    if not request_id:
        request_id = request.META.get('HTTP_X_REQUEST_ID')
    if not request_id:
        request_id = str(uuid.uuid4())[:8]
    return request_id


def log_audit(
    event_type: str,
    user_id: Optional[str] = None,
    org_id: Optional[str] = None,
    request_id: Optional[str] = None,
    client_ip: Optional[str] = None,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """
    Log a structured audit event.

    Args:
        event_type: One of AuditEvent constants
        user_id: Caller's user ID (from the gateway)
        org_id: Caller's organization ID
        request_id: Correlation ID for request tracing
        client_ip: Client IP address
        outcome: 'success' or 'failure'
        metadata: Event-specific data (no PII/secrets)
    """
    event = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'event_type': event_type,
        'user_id': user_id,
        'org_id': org_id,
        'request_id': request_id,
        'client_ip': client_ip,
        'outcome': outcome,
        'metadata': metadata or {}
    }

    audit_logger.info(json.dumps(event))


def log_audit_from_request(
    request,
    event_type: str,
    outcome: str = 'success',
    metadata: Optional[Dict[str, Any]] = None
):
    """Log an audit event with request context auto-populated."""
    principal = getattr(request, 'principal', None)

    log_audit(
        event_type=event_type,
        user_id=getattr(principal, 'user_id', None),
        org_id=getattr(principal, 'org_id', None),
        request_id=get_request_id(request),
        client_ip=get_client_ip(request),
        outcome=outcome,
        metadata=metadata
    )


# Convenience functions for common events

def audit_upload_created(request, upload_id: str, filename: str, size_bytes: int):
    log_audit_from_request(
        request,
        AuditEvent.UPLOAD_CREATED,
        metadata={
            'upload_id': upload_id,
            'filename': filename,
            'size_bytes': size_bytes,
        }
    )


def audit_indexing_queued(request, doc_hash: str, kind: str):
    log_audit_from_request(
        request,
        AuditEvent.INDEXING_QUEUED,
        metadata={
            'doc_hash': doc_hash[:16] + '...',
            'kind': kind,
        }
    )


def audit_indexing_retried(request, doc_hash: str, stage: Optional[str]):
    log_audit_from_request(
        request,
        AuditEvent.INDEXING_RETRIED,
        metadata={
            'doc_hash': doc_hash[:16] + '...',
            'stage': stage,
        }
    )


def audit_rag_query(request, question_length: int, top_k: int, citation_count: int):
    """Log RAG query (without the actual question text)."""
    log_audit_from_request(
        request,
        AuditEvent.RAG_QUERY,
        metadata={
            'question_length': question_length,
            'top_k': top_k,
            'citation_count': citation_count,
        }
    )


def audit_brief(request, tender_id: str, outcome: str, code: Optional[str] = None):
    log_audit_from_request(
        request,
        AuditEvent.RAG_BRIEF,
        outcome=outcome,
        metadata={'tender_id': tender_id, 'code': code}
    )


def audit_plan_denied(request, feature: str, code: str):
    log_audit_from_request(
        request,
        AuditEvent.PLAN_DENIED,
        outcome='failure',
        metadata={'feature': feature, 'code': code}
    )


def audit_indexing_completed(doc_hash: str, org_id: str, chunk_count: int):
    log_audit(
        AuditEvent.INDEXING_COMPLETED,
        org_id=org_id,
        metadata={
            'doc_hash': doc_hash[:16] + '...',
            'chunk_count': chunk_count,
        }
    )


def audit_indexing_failed(doc_hash: str, org_id: str, error: str):
    log_audit(
        AuditEvent.INDEXING_FAILED,
        org_id=org_id,
        outcome='failure',
        metadata={
            'doc_hash': doc_hash[:16] + '...',
            'error': error[:200],
        }
    )
