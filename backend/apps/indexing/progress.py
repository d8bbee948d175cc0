"""
Progress and resume state for indexing jobs.

Both records live in Redis with a TTL and are advisory only: the Document
and IndexArtifact rows are authoritative. Keys:

    progress:index:{orgId}:{tenderId}:{docHash}  -> ProgressSnapshot JSON
    resume:index:{orgId}:{tenderId}:{docHash}    -> ResumeState JSON

The same bytes uploaded by two organizations, or to two tenders, get
separate records. Callers pass the scope string built by
apps.indexing.payloads.index_scope.
"""
import json
import logging
import time
from dataclasses import dataclass, asdict
from typing import Callable, Optional

import redis

from apps.indexing.locks import index_lock_key

logger = logging.getLogger(__name__)

PROGRESS_TTL_SECONDS = 12 * 60 * 60

PHASES = (
    'queued',
    'manifest',
    'extract',
    'chunk',
    'embedding',
    'finalize',
    'summary',
    'ready',
    'failed',
)


def progress_key(scope: str) -> str:
    return f"progress:index:{scope}"


def resume_key(scope: str) -> str:
    return f"resume:index:{scope}"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ProgressSnapshot:
    """Where a document is in the pipeline right now."""
    docHash: str
    phase: str
    percent: int = 0
    batchesDone: Optional[int] = None
    totalBatches: Optional[int] = None
    etaSeconds: Optional[int] = None
    message: Optional[str] = None
    updatedAt: int = 0

    def __post_init__(self):
        if self.phase not in PHASES:
            raise ValueError(f"Unknown progress phase: {self.phase}")
        self.percent = max(0, min(100, int(round(self.percent))))
        if not self.updatedAt:
            self.updatedAt = now_ms()

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: dict) -> 'ProgressSnapshot':
        fields = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in fields})


@dataclass
class ResumeState:
    """Enough state to continue a partially embedded artifact build."""
    lastFile: Optional[str] = None
    lastPage: Optional[int] = None
    lastOffset: Optional[int] = None
    batchesProcessed: int = 0
    embeddingModel: Optional[str] = None
    embeddingDimensions: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'ResumeState':
        fields = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in fields})


class ProgressStore:
    """
    Reads and writes progress / resume records.

    `publish` is called with the scope and every snapshot written so live
    listeners (websocket clients) can follow along; it must not raise.
    """

    def __init__(
        self,
        client: redis.Redis,
        ttl_seconds: int = PROGRESS_TTL_SECONDS,
        publish: Optional[Callable[[str, ProgressSnapshot], None]] = None,
    ):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.publish = publish

    def write(self, scope: str, snapshot: ProgressSnapshot) -> ProgressSnapshot:
        self.client.set(
            progress_key(scope),
            json.dumps(snapshot.to_dict()),
            ex=self.ttl_seconds,
        )
        if self.publish is not None:
            self.publish(scope, snapshot)
        return snapshot

    def update(self, scope: str, phase: str, percent: float, **extra) -> ProgressSnapshot:
        """Convenience wrapper building and writing a snapshot."""
        doc_hash = scope.rsplit(':', 1)[-1]
        return self.write(scope, ProgressSnapshot(docHash=doc_hash, phase=phase, percent=percent, **extra))

    def read(self, scope: str) -> Optional[ProgressSnapshot]:
        raw = self.client.get(progress_key(scope))
        if not raw:
            return None
        try:
            return ProgressSnapshot.from_dict(json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding unreadable progress for {scope}: {e}")
            return None

    def write_resume(self, scope: str, state: ResumeState) -> None:
        self.client.set(resume_key(scope), json.dumps(state.to_dict()), ex=self.ttl_seconds)

    def read_resume(self, scope: str) -> Optional[ResumeState]:
        raw = self.client.get(resume_key(scope))
        if not raw:
            return None
        try:
            return ResumeState.from_dict(json.loads(raw))
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding unreadable resume state for {scope}: {e}")
            return None

    def clear_resume(self, scope: str) -> None:
        self.client.delete(resume_key(scope))

    def clear(self, scope: str) -> None:
        """Drop progress, resume state and the index lock of one scope."""
        self.client.delete(progress_key(scope), resume_key(scope), index_lock_key(scope))


def estimate_eta(started_at: float, done: int, total: int) -> Optional[int]:
    """Seconds remaining, extrapolated from the rate so far."""
    if done <= 0 or total <= done:
        return None
    elapsed = time.time() - started_at
    return int(round(elapsed / done * (total - done)))


def describe_progress(snapshot: Optional[ProgressSnapshot], artifact_status: Optional[str], doc_hash: str) -> dict:
    """
    Map a snapshot (or, without one, the artifact status) to the API shape.

    Returns:
        {'stage': not_started|building|complete|failed, 'percent', 'message', 'docHash'}
    """
    if snapshot is not None:
        if snapshot.phase == 'ready':
            stage, percent = 'complete', 100
        elif snapshot.phase == 'failed':
            stage, percent = 'failed', snapshot.percent
        else:
            stage, percent = 'building', snapshot.percent
        return {
            'stage': stage,
            'percent': percent,
            'message': snapshot.message,
            'docHash': doc_hash,
        }

    if artifact_status is None:
        return {'stage': 'not_started', 'percent': 0, 'message': None, 'docHash': doc_hash}
    if artifact_status == 'READY':
        return {'stage': 'complete', 'percent': 100, 'message': None, 'docHash': doc_hash}
    if artifact_status == 'FAILED':
        return {'stage': 'failed', 'percent': 0, 'message': None, 'docHash': doc_hash}
    return {'stage': 'building', 'percent': 0, 'message': None, 'docHash': doc_hash}
