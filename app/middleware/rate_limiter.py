"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

FILE_LIMIT = "120/minute"
TEMPLATE_ADMIN_LIMIT = "30/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - File endpoints:              120/minute (in-tray polling, actions)
        - Workflow template admin:     30/minute
        - Health check:                exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("files")
    if bp:
        limiter.limit(FILE_LIMIT)(bp)

    bp = app.blueprints.get("workflow_templates")
    if bp:
        limiter.limit(TEMPLATE_ADMIN_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — files: %s, workflow templates: %s",
        FILE_LIMIT, TEMPLATE_ADMIN_LIMIT,
    )
