"""
File Workflow Platform
Blueprint helpers shared by the API blueprints.
"""

from flask import request

from app.middleware.jwt_auth import current_user_id
from app.utils.errors import E, api_error


def get_client_ip() -> str | None:
    """Return real client IP, honouring X-Forwarded-For from load balancers.

    The first entry of X-Forwarded-For is the originating client; falls back
    to remote_addr when the header is absent.
    """
    forwarded_for = request.headers.get("X-Forwarded-For", "")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return request.remote_addr


def require_caller():
    """Return (user_id, None) or (None, 401 response)."""
    uid = current_user_id()
    if uid is None:
        return None, api_error(E.UNAUTHORIZED, "Authentication required")
    return uid, None
