# skip.py
"""
Skip/dedup decisions.

A job may be skipped only when
  (a) the trigger's content fingerprint equals the fingerprint recorded for
      the most recent successful run of an equivalent job, and
  (b) the trigger kind is not in the do-not-skip set (manual and push by
      default; those always force execution).

Whenever the answer is uncertain (no fingerprint, history unreadable,
malformed entry) the decision is "run".
"""
from __future__ import annotations

import logging

from .history import HistoryStore
from .model import JobSpec, SkipDecision, TriggerContext

logger = logging.getLogger(__name__)


class SkipDecider:
    def __init__(self, history: HistoryStore | None, *, after_successful_duplicate: bool = True):
        self.history = history
        self.after_successful_duplicate = after_successful_duplicate

    def decide(self, job: JobSpec, trigger: TriggerContext) -> SkipDecision:
        fp = trigger.fingerprint

        if trigger.event in trigger.do_not_skip:
            return SkipDecision(skip=False, fingerprint=fp, reason=f"{trigger.event.value} never skips")
        if not self.after_successful_duplicate:
            return SkipDecision(skip=False, fingerprint=fp, reason="skipping disabled")
        if self.history is None:
            return SkipDecision(skip=False, fingerprint=fp, reason="no history store")
        if not fp:
            return SkipDecision(skip=False, fingerprint=fp, reason="no fingerprint")

        try:
            previous = self.history.lookup(job.key)
        except Exception as e:
            # SkipHistoryUnavailable or a broken backend: never skip under uncertainty
            logger.warning("history lookup failed for %s: %s", job.name, e)
            return SkipDecision(skip=False, fingerprint=fp, reason=f"history unavailable ({e})")

        if previous is None:
            return SkipDecision(skip=False, fingerprint=fp, reason="no successful run recorded")
        if not isinstance(previous, str):
            return SkipDecision(skip=False, fingerprint=fp, reason="ambiguous history entry")
        if previous != fp:
            return SkipDecision(skip=False, fingerprint=fp, reason="content changed since last success")

        return SkipDecision(skip=True, fingerprint=fp, reason="identical content already succeeded")

    def record_success(self, job: JobSpec, trigger: TriggerContext) -> bool:
        """Record a successful completion. Returns False if the store refused it."""
        if self.history is None or not trigger.fingerprint:
            return False
        try:
            self.history.record(job.key, trigger.fingerprint)
        except Exception as e:
            logger.warning("history record failed for %s: %s", job.name, e)
            return False
        return True


def should_skip(job: JobSpec, trigger: TriggerContext, history: HistoryStore | None) -> SkipDecision:
    """Functional form of SkipDecider.decide with default settings."""
    return SkipDecider(history).decide(job, trigger)
