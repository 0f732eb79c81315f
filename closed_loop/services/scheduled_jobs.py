"""
Closed-Loop Feedback Engine
Scheduled Jobs.

Concrete job implementations run by SchedulerService on their own timers.

Jobs:
    - sla_escalation_scan: escalates open cases past their SLA deadline
    - recovery_survey_dispatch: sends due 30-day recovery surveys, then
      retries failed survey hand-offs
"""

from __future__ import annotations

import logging
from typing import Any

from closed_loop.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: SLA Escalation Scan
# ═══════════════════════════════════════════════════════════════════════════

@register_job("sla_escalation_scan")
def run_sla_escalation_scan(app) -> dict[str, Any]:
    """Escalate open feedback cases whose SLA deadline has passed."""
    from closed_loop.services.sla_scanner import scan_sla_breaches

    return scan_sla_breaches(timeout_seconds=app.config.get("SLA_SCAN_TIMEOUT_SECONDS"))


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Recovery Survey Dispatch
# ═══════════════════════════════════════════════════════════════════════════

@register_job("recovery_survey_dispatch")
def run_recovery_survey_dispatch(app) -> dict[str, Any]:
    """Send 30-day recovery surveys for resolved cases, throttled per contact."""
    from closed_loop.services.recovery_scheduler import (
        dispatch_recovery_surveys,
        retry_failed_dispatches,
    )

    results = dispatch_recovery_surveys(
        timeout_seconds=app.config.get("RECOVERY_SCAN_TIMEOUT_SECONDS"),
    )
    results["retries"] = retry_failed_dispatches()
    return results
