"""
Signed access tokens issued at login.

Tokens are ``django.core.signing`` payloads carrying the user id, phone
number and roles; they expire after ``ACCESS_TOKEN_MAX_AGE`` seconds.
"""

import logging

from django.conf import settings
from django.core import signing

logger = logging.getLogger(__name__)

TOKEN_SALT = "billing.access-token"


def issue_access_token(user, roles=None):
    """Sign a token for ``user``; ``roles`` narrows what it carries."""
    payload = {
        "sub": user.user_id,
        "phone": user.phone_number,
        "roles": list(user.roles or []) if roles is None else list(roles),
    }
    return signing.dumps(payload, salt=TOKEN_SALT)


def read_access_token(token):
    """Return the token payload, or None if it is forged or expired."""
    try:
        return signing.loads(
            token, salt=TOKEN_SALT, max_age=settings.ACCESS_TOKEN_MAX_AGE
        )
    except signing.SignatureExpired:
        logger.info("Rejected expired access token")
    except signing.BadSignature:
        logger.warning("Rejected access token with bad signature")
    return None


def token_from_request(request):
    """Extract a ``Bearer`` token from the Authorization header."""
    auth_header = request.META.get("HTTP_AUTHORIZATION", "")
    if auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip()
    return None
