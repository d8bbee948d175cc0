"""
Authentication for API endpoints.

Users are authenticated by the gateway in front of this service, which
forwards the caller's identity as headers. Requests without them are
rejected with 401.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Callable
from functools import wraps

from django.http import JsonResponse, HttpRequest

logger = logging.getLogger(__name__)

ORG_HEADER = 'X-Org-Id'
USER_HEADER = 'X-User-Id'


@dataclass(frozen=True)
class Principal:
    """The authenticated caller."""
    org_id: str
    user_id: str


def _meta_name(header: str) -> str:
    return 'HTTP_' + header.upper().replace('-', '_')


def get_principal_from_request(request: HttpRequest) -> Optional[Principal]:
    """
    Build the caller's Principal from gateway identity headers.

    Args:
        request: The Django HTTP request

    Returns:
        Principal if both headers are present, None otherwise
    """
    org_id = request.META.get(_meta_name(ORG_HEADER), '').strip()
    user_id = request.META.get(_meta_name(USER_HEADER), '').strip()

    if not org_id or not user_id:
        return None

    return Principal(org_id=org_id, user_id=user_id)


def auth_required(view_func: Callable) -> Callable:
    """
    Decorator that requires an authenticated caller.

    Attaches the caller to request.principal.

    Usage:
        @auth_required
        def my_view(request):
            org_id = request.principal.org_id
            ...
    """
    @wraps(view_func)
    def wrapper(request: HttpRequest, *args, **kwargs):
        principal = get_principal_from_request(request)

        if principal is None:
            return JsonResponse(
                {'error': 'Unauthorized'},
                status=401
            )

        request.principal = principal
        logger.debug(f"Authenticated user {principal.user_id} (org={principal.org_id})")
        return view_func(request, *args, **kwargs)

    return wrapper
