"""
Survey delivery gateway.

All outbound recovery-survey hand-offs go through this class. The actual
delivery (email/SMS/WhatsApp) belongs to the survey platform behind
SURVEY_DISPATCH_URL; this gateway only posts the request.

  - Log-only mode when SURVEY_DISPATCH_URL is unset (dev/test): the hand-off
    is logged and reported as delivered
  - Retry: max 2 attempts, backoff 1 s → 4 s
  - Timeout: SURVEY_DISPATCH_TIMEOUT seconds (default 10)

Testability: pass a mock `session` to SurveyGateway() in tests instead of
letting it create a real requests.Session internally.
"""

from __future__ import annotations

import logging
import time

import requests
from flask import current_app

logger = logging.getLogger(__name__)

_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = (1, 4)
_DEFAULT_TIMEOUT = 10


class DispatchResult:
    """Structured return value from SurveyGateway.send_survey.

    Attributes:
        ok:           True if the channel accepted the survey.
        status_code:  HTTP status (None in log-only mode or on network failure).
        error:        Human-readable error message or None.
        duration_ms:  Round-trip latency in milliseconds.
        log_only:     True when no channel is configured.
    """

    def __init__(self, ok: bool, status_code: int | None, error: str | None,
                 duration_ms: int, log_only: bool = False) -> None:
        self.ok = ok
        self.status_code = status_code
        self.error = error
        self.duration_ms = duration_ms
        self.log_only = log_only

    def __repr__(self) -> str:
        return f"<DispatchResult ok={self.ok} status={self.status_code} error={self.error!r}>"


class SurveyGateway:
    """HTTP gateway to the survey delivery platform."""

    def __init__(self, session: requests.Session | None = None,
                 retry_backoff: tuple[float, ...] = _RETRY_BACKOFF_SECONDS) -> None:
        self._session = session
        self._retry_backoff = retry_backoff

    @property
    def session(self) -> requests.Session:
        """Return (or lazily create) the requests.Session."""
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def send_survey(self, company_id: str, contact_id: str | None,
                    survey_type: str, *, case_id: str | None = None) -> DispatchResult:
        """Hand one survey to the delivery platform.

        Never raises for channel errors; inspect ``DispatchResult.ok``.
        """
        url = current_app.config.get("SURVEY_DISPATCH_URL")
        payload = {
            "company_id": company_id,
            "contact_id": contact_id,
            "survey_type": survey_type,
            "reason": "recovery",
            "feedback_case_id": case_id,
        }

        if not url:
            logger.info(
                "Survey dispatch (log-only) type=%s company=%s contact=%s",
                survey_type, company_id, contact_id,
                extra={"case_id": case_id, "event_type": "survey_dispatch"},
            )
            return DispatchResult(True, None, None, 0, log_only=True)

        timeout = current_app.config.get("SURVEY_DISPATCH_TIMEOUT", _DEFAULT_TIMEOUT)
        start = time.monotonic()
        last_error = None
        status_code = None

        for attempt in range(_RETRY_MAX + 1):
            try:
                resp = self.session.post(url, json=payload, timeout=timeout)
                status_code = resp.status_code
                if 200 <= resp.status_code < 300:
                    duration_ms = int((time.monotonic() - start) * 1000)
                    return DispatchResult(True, status_code, None, duration_ms)
                last_error = f"HTTP {resp.status_code}"
                # 4xx means the request itself is wrong; retrying will not help
                if 400 <= resp.status_code < 500:
                    break
            except requests.RequestException as exc:
                status_code = None
                last_error = str(exc)

            if attempt < _RETRY_MAX:
                logger.warning("Survey dispatch attempt %d failed: %s", attempt + 1, last_error)
                delay = self._retry_backoff[min(attempt, len(self._retry_backoff) - 1)] if self._retry_backoff else 0
                if delay:
                    time.sleep(delay)

        duration_ms = int((time.monotonic() - start) * 1000)
        return DispatchResult(False, status_code, last_error, duration_ms)


# Module-level singleton
survey_gateway = SurveyGateway()
