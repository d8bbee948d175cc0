"""
Event publisher for indexing progress.

Publishes progress snapshots to the Django Channels layer for broadcast to
WebSocket clients watching a document.
"""
import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

from apps.indexing.events import event_type_for_phase, get_group_name
from apps.indexing.progress import ProgressSnapshot

logger = logging.getLogger(__name__)


def publish_snapshot(scope: str, snapshot: ProgressSnapshot) -> None:
    """
    Send a snapshot to every WebSocket connection following `scope`.

    Publishing is best effort: the snapshot is already stored in Redis and
    clients can always poll the progress endpoint, so failures are logged
    and the job carries on.
    """
    channel_layer = get_channel_layer()

    if channel_layer is None:
        logger.debug("Channel layer not configured, skipping progress broadcast")
        return

    group_name = get_group_name(scope)
    event_type = event_type_for_phase(snapshot.phase)

    try:
        async_to_sync(channel_layer.group_send)(
            group_name,
            {
                "type": event_type.value,
                "data": snapshot.to_dict(),
            }
        )
    except Exception as e:
        logger.warning(f"Failed to publish {event_type.value} to {group_name}: {e}")
        return

    logger.debug(f"Published {event_type.value} to {group_name}: phase={snapshot.phase}, percent={snapshot.percent}")
