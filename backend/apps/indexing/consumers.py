"""
WebSocket Consumer for Indexing Progress Events.

Clients connect to /ws/progress/<tenderId>/<docHash> to receive real-time
progress updates for one document of one of their organization's tenders.
"""
import logging

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncJsonWebsocketConsumer

from apps.indexing.events import get_group_name
from apps.indexing.payloads import index_scope

logger = logging.getLogger(__name__)


class IndexingProgressConsumer(AsyncJsonWebsocketConsumer):
    """
    WebSocket consumer that:
    1. Requires a principal (set by OrgHeaderAuthMiddleware)
    2. Checks the document belongs to the caller's organization and tender
    3. Joins the (org, tender, document) progress group and forwards events
    """

    async def connect(self):
        """Handle new WebSocket connection."""
        self.principal = self.scope.get("principal")
        kwargs = self.scope["url_route"]["kwargs"]
        self.tender_id = kwargs["tender_id"]
        self.doc_hash = kwargs["doc_hash"]

        if not self.principal:
            logger.warning("Rejecting unauthenticated WebSocket connection")
            await self.close(code=4001)
            return

        if not await self._can_view(self.principal.org_id, self.tender_id, self.doc_hash):
            logger.warning(f"Rejecting progress stream for {self.doc_hash[:12]}: not visible to org")
            await self.close(code=4004)
            return

        self.group_name = get_group_name(index_scope(self.principal.org_id, self.tender_id, self.doc_hash))
        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.accept()

        logger.info(f"WebSocket following {self.doc_hash[:12]} for org {self.principal.org_id}")

        await self.send_json({
            "type": "connected",
            "tenderId": self.tender_id,
            "docHash": self.doc_hash,
        })

    @database_sync_to_async
    def _can_view(self, org_id: str, tender_id: str, doc_hash: str) -> bool:
        from apps.docs.models import Document, IndexArtifact

        return (
            IndexArtifact.objects.filter(org_id=org_id, tender_id=tender_id, doc_hash=doc_hash).exists()
            or Document.objects.filter(org_id=org_id, tender_id=tender_id, doc_hash=doc_hash).exists()
        )

    async def disconnect(self, close_code):
        """Handle WebSocket disconnect."""
        if hasattr(self, 'group_name'):
            await self.channel_layer.group_discard(self.group_name, self.channel_name)
            logger.info(f"WebSocket for {self.doc_hash[:12]} disconnected (code={close_code})")

    async def receive_json(self, content):
        """Answer pings; everything else is ignored."""
        if content.get("type") == "ping":
            await self.send_json({"type": "pong"})

    async def index_progress(self, event):
        await self.send_json({"type": "index_progress", "data": event["data"]})

    async def index_complete(self, event):
        await self.send_json({"type": "index_complete", "data": event["data"]})

    async def index_failed(self, event):
        await self.send_json({"type": "index_failed", "data": event["data"]})
