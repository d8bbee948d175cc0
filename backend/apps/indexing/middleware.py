"""
WebSocket authentication middleware for Django Channels.

The gateway in front of the backend authenticates users and forwards their
identity as X-Org-Id / X-User-Id headers; this middleware turns those
headers into a Principal on the connection scope.
"""
import logging

from channels.middleware import BaseMiddleware

from apps.authn.middleware import ORG_HEADER, USER_HEADER, Principal

logger = logging.getLogger(__name__)


def _header(scope, name: str) -> str:
    wanted = name.lower().encode()
    for key, value in scope.get("headers", []):
        if key.lower() == wanted:
            return value.decode().strip()
    return ''


class OrgHeaderAuthMiddleware(BaseMiddleware):
    """Adds 'principal' to the scope, or None when identity headers are missing."""

    async def __call__(self, scope, receive, send):
        if scope["type"] != "websocket":
            return await super().__call__(scope, receive, send)

        org_id = _header(scope, ORG_HEADER)
        user_id = _header(scope, USER_HEADER)

        if org_id and user_id:
            scope["principal"] = Principal(org_id=org_id, user_id=user_id)
        else:
            logger.warning("WebSocket connection without identity headers")
            scope["principal"] = None

        return await super().__call__(scope, receive, send)
