"""
WebSocket URL routing for indexing app.
"""
from django.urls import re_path

from apps.indexing.consumers import IndexingProgressConsumer

websocket_urlpatterns = [
    re_path(r"ws/progress/(?P<tender_id>[^/]+)/(?P<doc_hash>[0-9a-f]{16,64})/?$", IndexingProgressConsumer.as_asgi()),
]
