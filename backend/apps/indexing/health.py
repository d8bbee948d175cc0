"""
Health check endpoints for Kubernetes/Docker.

- /healthz - Liveness (is process running?)
- /readyz - Readiness (can we serve traffic?)
"""
import logging
from datetime import datetime, timezone

import redis
from django.db import DatabaseError, connection
from django.http import JsonResponse
from django.views.decorators.http import require_GET
from django.views.decorators.csrf import csrf_exempt

from apps.docs.storage import StorageError
from apps.indexing.runtime import get_runtime

logger = logging.getLogger(__name__)

READINESS_KEY = 'health/ready'


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


@csrf_exempt
@require_GET
def healthz(request):
    """
    Liveness endpoint.

    Returns 200 if the Django process is running.
    Does NOT check dependencies - that's for readiness.
    """
    return JsonResponse({
        'status': 'healthy',
        'timestamp': get_timestamp()
    })


def check_database() -> tuple[str, bool]:
    try:
        with connection.cursor() as cursor:
            cursor.execute('SELECT 1')
            cursor.fetchone()
        return 'ok', True
    except DatabaseError as e:
        logger.error(f"Database health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_redis(client: redis.Redis) -> tuple[str, bool]:
    try:
        client.ping()
        return 'ok', True
    except redis.RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return f'error: {str(e)[:50]}', False


def check_blob_store(runtime) -> tuple[str, bool]:
    """
    Check the blob store (optional, degrades gracefully).

    Existing indexes stay searchable from the artifact cache.
    """
    try:
        runtime.blobs.exists(runtime.index_bucket, READINESS_KEY)
        return 'ok', True
    except StorageError as e:
        logger.warning(f"Blob store health check failed: {e}")
        return f'degraded: {str(e)[:30]}', True


@csrf_exempt
@require_GET
def readyz(request):
    """
    Readiness endpoint.

    Returns 200 only if the database and Redis are reachable.
    """
    runtime = get_runtime()
    checks = {}
    all_ok = True

    for name, (status, ok) in (
        ('database', check_database()),
        ('redis', check_redis(runtime.redis)),
        ('blobs', check_blob_store(runtime)),
    ):
        checks[name] = status
        all_ok = all_ok and ok

    response_data = {
        'status': 'ready' if all_ok else 'not_ready',
        'timestamp': get_timestamp(),
        'checks': checks
    }

    return JsonResponse(response_data, status=200 if all_ok else 503)
