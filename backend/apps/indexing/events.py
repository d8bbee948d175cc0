"""
WebSocket progress event schema.

Every progress snapshot written by the pipeline is broadcast to the
channel-layer group of its (org, tender, document) scope:

{
    "type": "index_progress" | "index_complete" | "index_failed",
    "data": {
        "docHash": "...",
        "phase": "queued|manifest|extract|chunk|embedding|finalize|summary|ready|failed",
        "percent": 0-100,
        "batchesDone": 3,
        "totalBatches": 10,
        "etaSeconds": 42,
        "message": "optional human-readable message",
        "updatedAt": 1700000000000
    }
}
"""
import hashlib
from enum import Enum


class EventType(str, Enum):
    """Types of WebSocket events."""
    INDEX_PROGRESS = "index_progress"
    INDEX_COMPLETE = "index_complete"
    INDEX_FAILED = "index_failed"


GROUP_PREFIX = "progress"


def event_type_for_phase(phase: str) -> EventType:
    if phase == 'ready':
        return EventType.INDEX_COMPLETE
    if phase == 'failed':
        return EventType.INDEX_FAILED
    return EventType.INDEX_PROGRESS


def get_group_name(scope: str) -> str:
    """
    Channel-layer group for one scope's progress stream.

    Group names must be short ASCII, and org or tender ids may not be,
    so the scope is hashed.
    """
    digest = hashlib.sha1(scope.encode('utf-8')).hexdigest()
    return f"{GROUP_PREFIX}_{digest}"
