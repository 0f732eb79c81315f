"""
Closed-Loop Feedback Engine
Blueprint package: feedback, inbox, scheduler.
"""

from flask import request


def _int_arg(name, default):
    try:
        return int(request.args.get(name, default))
    except (ValueError, TypeError):
        return default


def pagination_args(default_limit=50, max_limit=500):
    """Read ``limit`` / ``offset`` from the query string.

    Limit is clamped to 1..max_limit, offset to >= 0; unparsable values fall
    back to the defaults.

    Returns:
        (limit, offset)
    """
    limit = min(max(_int_arg("limit", default_limit), 1), max_limit)
    offset = max(_int_arg("offset", 0), 0)
    return limit, offset
