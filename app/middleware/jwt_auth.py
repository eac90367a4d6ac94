"""
JWT Auth Middleware — Parses JWT from Authorization header, sets g.current_user_id.

The middleware only resolves identity. It never rejects a request itself:
blueprints that need a caller call ``current_user_id()`` and answer 401
when it is None. Ownership and role checks belong to the workflow engine.
"""

import logging

import jwt as pyjwt
from flask import g, request

from app.services.jwt_service import decode_access_token, user_id_from_payload

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.current_user_id = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]  # Strip "Bearer "

        try:
            payload = decode_access_token(token)
            g.current_user_id = user_id_from_payload(payload)
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired bearer token on %s", path, extra={"event_type": "auth_failure"})
        except pyjwt.InvalidTokenError:
            logger.warning("Invalid bearer token on %s", path, extra={"event_type": "auth_failure"})


def current_user_id() -> int | None:
    """User id resolved for this request, or None."""
    return getattr(g, "current_user_id", None)
