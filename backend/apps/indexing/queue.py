"""
Durable, priority-ordered job queue backed by the PipelineJob table.

Claiming uses SELECT ... FOR UPDATE SKIP LOCKED inside a transaction so
multiple workers can poll the same table without blocking each other,
followed by a conditional UPDATE that only succeeds for one claimant.
"""
import logging
import re
from datetime import timedelta
from typing import Dict, Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Count
from django.utils import timezone

from apps.indexing.errors import truncate_error
from apps.indexing.models import JobKind, JobStatus, PipelineJob
from apps.indexing.retry import JOB_RETRY_CONFIG, job_backoff_seconds

logger = logging.getLogger(__name__)

# Priority: lower runs first
BASE_PRIORITY = 1000
SIZE_PENALTY_STEP = 128 * 1024
MAX_SIZE_PENALTY = 800
KEYWORD_BOOST = 200
PRIORITY_KEYWORDS_RE = re.compile(r'\b(instruction|form|spec|boq|tor)\b', re.IGNORECASE)

STAGE_CONCURRENCY = {
    JobKind.MANIFEST: 1,
    JobKind.EXTRACT: 4,
    JobKind.CHUNK: 8,
    JobKind.EMBED: 16,
    JobKind.SUMMARY: 4,
    JobKind.ARTIFACT: 2,
}


def compute_priority(size_bytes: int, filename: Optional[str]) -> int:
    """
    Queue priority for a document (lower is sooner).

    Small documents and documents that look like instructions, forms,
    specs, BOQs or terms of reference are surfaced first.
    """
    size_penalty = min(MAX_SIZE_PENALTY, max(0, int(size_bytes or 0)) // SIZE_PENALTY_STEP)
    boost = KEYWORD_BOOST if filename and PRIORITY_KEYWORDS_RE.search(filename) else 0
    return BASE_PRIORITY + size_penalty - boost


def stage_concurrency(kind: str) -> int:
    """Worker threads for a job kind, overridable via STAGE_CONCURRENCY_<KIND>."""
    default = STAGE_CONCURRENCY[JobKind(kind)]
    return int(getattr(settings, f'STAGE_CONCURRENCY_{kind.upper()}', default))


class JobQueue:
    """Enqueue, claim, complete and fail pipeline jobs."""

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
    ):
        self.max_attempts = max_attempts or int(
            getattr(settings, 'JOB_MAX_ATTEMPTS', JOB_RETRY_CONFIG['max_attempts'])
        )
        self.backoff_base = backoff_base if backoff_base is not None else float(
            getattr(settings, 'JOB_BACKOFF_BASE_SECONDS', JOB_RETRY_CONFIG['initial_backoff'])
        )

    def enqueue(self, payload, priority: int = BASE_PRIORITY, delay_seconds: float = 0) -> PipelineJob:
        """
        Add a job for `payload`, or return the active job with the same key.

        Args:
            payload: A typed payload from apps.indexing.payloads
            priority: Lower runs first
            delay_seconds: Earliest start, relative to now
        """
        job_key = payload.job_key
        existing = PipelineJob.objects.filter(
            job_key=job_key,
            status__in=[JobStatus.QUEUED, JobStatus.RUNNING],
        ).first()
        if existing is not None:
            logger.debug(f"Job {job_key} already active ({existing.status})")
            return existing

        try:
            with transaction.atomic():
                job = PipelineJob.objects.create(
                    kind=payload.kind.value,
                    job_key=job_key,
                    payload=payload.to_dict(),
                    priority=priority,
                    max_attempts=self.max_attempts,
                    available_at=timezone.now() + timedelta(seconds=delay_seconds),
                )
        except IntegrityError:
            # Lost a race with another producer for the same key
            return PipelineJob.objects.get(
                job_key=job_key,
                status__in=[JobStatus.QUEUED, JobStatus.RUNNING],
            )

        logger.info(f"Enqueued {job.kind} job {job_key} (priority={priority})")
        return job

    def claim(self, kind: str) -> Optional[PipelineJob]:
        """
        Claim the next runnable job of `kind`.

        Returns:
            The claimed job (status RUNNING, attempts incremented) or None
        """
        now = timezone.now()
        with transaction.atomic():
            candidate = (
                PipelineJob.objects
                .select_for_update(skip_locked=True)
                .filter(kind=kind, status=JobStatus.QUEUED, available_at__lte=now)
                .order_by('priority', 'created_at')
                .first()
            )
            if candidate is None:
                return None

            claimed = PipelineJob.objects.filter(
                pk=candidate.pk,
                status=JobStatus.QUEUED,
            ).update(
                status=JobStatus.RUNNING,
                attempts=candidate.attempts + 1,
                locked_at=now,
                updated_at=now,
            )
            if not claimed:
                return None

        candidate.refresh_from_db()
        logger.info(f"Claimed {kind} job {candidate.job_key} (attempt {candidate.attempts}/{candidate.max_attempts})")
        return candidate

    def complete(self, job: PipelineJob) -> None:
        PipelineJob.objects.filter(pk=job.pk).update(
            status=JobStatus.COMPLETE,
            locked_at=None,
            updated_at=timezone.now(),
        )
        job.status = JobStatus.COMPLETE

    def fail(self, job: PipelineJob, error: Exception, permanent: bool = False) -> bool:
        """
        Record a failed attempt.

        Returns:
            True if the job is dead (permanent error or attempts exhausted),
            False if it was rescheduled with backoff.
        """
        message = truncate_error(error)
        now = timezone.now()

        if permanent or job.attempts >= job.max_attempts:
            PipelineJob.objects.filter(pk=job.pk).update(
                status=JobStatus.FAILED,
                last_error=message,
                locked_at=None,
                updated_at=now,
            )
            job.status = JobStatus.FAILED
            job.last_error = message
            logger.error(
                f"{job.kind} job {job.job_key} failed permanently after "
                f"{job.attempts} attempt(s): {message}"
            )
            return True

        delay = job_backoff_seconds(job.attempts, self.backoff_base)
        PipelineJob.objects.filter(pk=job.pk).update(
            status=JobStatus.QUEUED,
            last_error=message,
            locked_at=None,
            available_at=now + timedelta(seconds=delay),
            updated_at=now,
        )
        job.status = JobStatus.QUEUED
        job.last_error = message
        logger.warning(
            f"{job.kind} job {job.job_key} failed (attempt {job.attempts}/{job.max_attempts}), "
            f"retrying in {delay:.1f}s: {message}"
        )
        return False

    def touch(self, job_key: str) -> bool:
        """Mark a RUNNING job as still alive. Returns False if it is no longer running."""
        now = timezone.now()
        touched = PipelineJob.objects.filter(
            job_key=job_key,
            status=JobStatus.RUNNING,
        ).update(locked_at=now, updated_at=now)
        return bool(touched)

    def requeue_stalled(self, stall_timeout_seconds: float) -> int:
        """Return RUNNING jobs whose worker went silent to the queue."""
        cutoff = timezone.now() - timedelta(seconds=stall_timeout_seconds)
        count = PipelineJob.objects.filter(
            status=JobStatus.RUNNING,
            locked_at__lt=cutoff,
        ).update(status=JobStatus.QUEUED, locked_at=None, available_at=timezone.now())
        if count:
            logger.warning(f"Requeued {count} stalled job(s)")
        return count

    def counts(self) -> Dict[str, Dict[str, int]]:
        """Job counts per kind and status."""
        result: Dict[str, Dict[str, int]] = {}
        rows = PipelineJob.objects.values('kind', 'status').annotate(n=Count('id'))
        for row in rows:
            result.setdefault(row['kind'], {})[row['status']] = row['n']
        return result

    def clear_failed(self, kind: Optional[str] = None) -> int:
        """Delete dead jobs, optionally for one kind only."""
        qs = PipelineJob.objects.filter(status=JobStatus.FAILED)
        if kind:
            qs = qs.filter(kind=kind)
        deleted, _ = qs.delete()
        return deleted
