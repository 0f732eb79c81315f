"""
Rate limiting configuration.

The Limiter instance is created in closed_loop/__init__.py with no default
limits; this module applies limits per blueprint.

Usage:
    from closed_loop.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

READ_LIMIT = "200/minute"
SCHEDULER_LIMIT = "10/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Feedback endpoints:  200/minute, plus RATELIMIT_ACTIONS on the
                               action route (set on the view itself)
        - Scheduler triggers:  10/minute (each trigger runs a full scan)

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("feedback")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("scheduler")
    if bp:
        limiter.limit(SCHEDULER_LIMIT)(bp)

    app.logger.info(
        "Rate limits: feedback=%s actions=%s scheduler=%s",
        READ_LIMIT, app.config.get("RATELIMIT_ACTIONS"), SCHEDULER_LIMIT,
    )
