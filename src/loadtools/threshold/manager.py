from __future__ import annotations

import logging
import math
import threading
import time
from typing import Any, Dict, List, Optional, Union

from loadtools.validation.types import Severity

from .policy import Decision, ThresholdAction, ThresholdPolicy

log = logging.getLogger("loadtools.threshold")


def _timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime())


class AtomicCounter:
    """Monotonic counter; increment returns the new value."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def increment(self, n: int = 1) -> int:
        with self._lock:
            self._value += n
            return self._value

    @property
    def value(self) -> int:
        return self._value


class ThresholdCounters:
    def __init__(self) -> None:
        self.errors = AtomicCounter()
        self.warnings = AtomicCounter()
        self.records = AtomicCounter()

    def snapshot(self) -> Dict[str, int]:
        return {
            "errors": self.errors.value,
            "warnings": self.warnings.value,
            "records": self.records.value,
        }


class ThresholdManager:
    """
    Counts failures for one job execution and decides what a breach means.

    The first crossing of any limit in an attempt is latched: it yields one
    non-Continue decision and later calls in the same attempt answer from
    the latch. STOP is permanent for the execution.
    """

    def __init__(self, policy: ThresholdPolicy):
        self.policy = policy
        self.reset()

    def reset(self) -> None:
        """Clear all state for a fresh execution."""
        self.counters = ThresholdCounters()
        self.expected_records = 0
        self._latch_lock = threading.Lock()
        self._latched: Optional[Decision] = None
        self._stopped = False
        self._breach: Optional[Dict[str, Any]] = None
        self._pending_delay: Optional[float] = None
        self._retry = self.policy.retry.start()
        self._attempts: List[Dict[str, Any]] = []
        self._alerted = False

    # ------------------------------------------------------------------
    # Counting
    # ------------------------------------------------------------------
    def expect(self, records: int) -> None:
        """Size of the batch; used as the error-rate denominator."""
        self.expected_records = int(records)

    def record_processed(self, n: int = 1) -> None:
        self.counters.records.increment(n)

    def record_outcome(self, severity: Union[Severity, str]) -> Decision:
        severity = Severity(severity)
        if severity is Severity.ERROR:
            errors = self.counters.errors.increment()
            warnings = self.counters.warnings.value
            self._early_warning(errors)
        else:
            warnings = self.counters.warnings.increment()
            errors = self.counters.errors.value

        if self._stopped:
            return Decision.STOP
        reason = self._check(errors, warnings)
        if reason is None:
            return self._ongoing()
        return self._on_breach(reason)

    def _early_warning(self, errors: int) -> None:
        limit = self.policy.max_errors
        if limit and errors == max(1, math.ceil(limit * self.policy.warning_ratio)) and errors < limit:
            log.warning("Error count %d is approaching the limit of %d", errors, limit)

    def _check(self, errors: int, warnings: int) -> Optional[str]:
        p = self.policy
        if p.max_errors is not None and errors >= p.max_errors:
            return f"error count {errors} reached limit {p.max_errors}"
        if p.max_warnings is not None and warnings >= p.max_warnings:
            return f"warning count {warnings} reached limit {p.max_warnings}"
        if p.max_error_rate is not None:
            denominator = max(self.counters.records.value, self.expected_records)
            if denominator and errors / denominator > p.max_error_rate:
                return (
                    f"error rate {errors}/{denominator} = {errors / denominator:.2%} "
                    f"exceeds {p.max_error_rate:.2%}"
                )
        return None

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------
    def _ongoing(self) -> Decision:
        if self._stopped:
            return Decision.STOP
        if self._latched is Decision.RETRY_SCHEDULED:
            return Decision.RETRY_SCHEDULED
        return Decision.CONTINUE

    def _on_breach(self, reason: str) -> Decision:
        with self._latch_lock:
            if self._latched is not None:
                return self._ongoing()

            action = self.policy.action
            if action is ThresholdAction.STOP:
                decision = Decision.STOP
            elif action is ThresholdAction.ALERT_ONLY:
                decision = Decision.ALERT
                self._alerted = True
            elif action is ThresholdAction.RETRY_WITH_DELAY:
                delay = self._retry.record_failure(reason=reason, **self.counters.snapshot())
                if delay is None:
                    decision = Decision.STOP
                else:
                    decision = Decision.RETRY_SCHEDULED
                    self._pending_delay = delay
            else:
                decision = Decision.CONTINUE

            if decision is Decision.STOP:
                self._stopped = True
            self._latched = decision
            self._breach = {
                "reason": reason,
                "at": _timestamp(),
                "decision": decision.value,
                "attempt": len(self._attempts),
                **self.counters.snapshot(),
            }
            log.warning("Threshold breached (%s): %s", decision.value, reason)
            return decision

    @property
    def decision(self) -> Decision:
        """Decision governing the current attempt as a whole."""
        if self._stopped:
            return Decision.STOP
        if self._latched is Decision.RETRY_SCHEDULED:
            return Decision.RETRY_SCHEDULED
        if self._alerted:
            return Decision.ALERT
        return Decision.CONTINUE

    @property
    def halted(self) -> bool:
        """True when workers should stop starting new records."""
        return self._stopped or self._latched is Decision.RETRY_SCHEDULED

    def begin_retry(self) -> float:
        """
        Start the next attempt after RETRY_SCHEDULED: archive this attempt's
        counters, start fresh ones, and return the backoff to wait first.
        """
        if self.decision is not Decision.RETRY_SCHEDULED:
            raise RuntimeError("no retry is scheduled")
        delay = self._pending_delay or 0.0
        self._attempts.append({**self.counters.snapshot(), "breach": self._breach, "delay": delay})
        self.counters = ThresholdCounters()
        self._latched = None
        self._pending_delay = None
        return delay

    # ------------------------------------------------------------------
    def statistics(self) -> Dict[str, Any]:
        snap = self.counters.snapshot()
        denominator = max(snap["records"], self.expected_records)
        return {
            **snap,
            "expected_records": self.expected_records,
            "error_rate": snap["errors"] / denominator if denominator else 0.0,
            "decision": self.decision.value,
            "breach": self._breach,
            "retries_used": self._retry.retries_used,
            "attempts": list(self._attempts),
            "policy": self.policy.to_dict(),
        }
