from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from loadtools.errors import InvalidTransition


def _timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime())


def new_correlation_id() -> str:
    return uuid.uuid4().hex


class JobStatus(str, Enum):
    INITIALIZED = "initialized"
    VALIDATING = "validating"
    TRANSFORMING = "transforming"
    ERROR_CHECK = "error_check"
    LOADING = "loading"
    POST_CHECK = "post_check"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL


TERMINAL: FrozenSet[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.ABORTED})

# forward edges only; FAILED is reachable from every non-terminal state
TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.INITIALIZED: frozenset({JobStatus.VALIDATING, JobStatus.ABORTED, JobStatus.FAILED}),
    JobStatus.VALIDATING: frozenset({JobStatus.TRANSFORMING, JobStatus.ABORTED, JobStatus.FAILED}),
    JobStatus.TRANSFORMING: frozenset({JobStatus.ERROR_CHECK, JobStatus.ABORTED, JobStatus.FAILED}),
    JobStatus.ERROR_CHECK: frozenset({JobStatus.LOADING, JobStatus.ABORTED, JobStatus.FAILED}),
    JobStatus.LOADING: frozenset({JobStatus.POST_CHECK, JobStatus.ABORTED, JobStatus.FAILED}),
    JobStatus.POST_CHECK: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.ABORTED: frozenset(),
}


@dataclass
class LoadJobExecution:
    """
    One run of one job. Status only moves along TRANSITIONS; every move is
    appended to ``history`` with its timestamp.
    """

    job_id: str
    correlation_id: str = field(default_factory=new_correlation_id)
    status: JobStatus = JobStatus.INITIALIZED
    started: str = field(default_factory=_timestamp)
    finished: Optional[str] = None
    input_file: Optional[str] = None

    history: List[Dict[str, Any]] = field(default_factory=list)
    phase_timings: List[Dict[str, Any]] = field(default_factory=list)

    records_read: int = 0
    records_valid: int = 0
    records_rejected: int = 0
    records_loaded: int = 0

    threshold: Dict[str, Any] = field(default_factory=dict)
    control_file: Optional[str] = None
    exit_class: Optional[str] = None
    load_result: Dict[str, Any] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=dict)
    artifacts: Dict[str, str] = field(default_factory=dict)

    failure: Optional[str] = None
    failure_phase: Optional[str] = None
    error: Optional[Exception] = field(default=None, repr=False)   # exception behind the failure, if any

    _phase_clock: Optional[float] = field(default=None, repr=False)

    # ------------------------------------------------------------------
    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    @property
    def completed_with_rejects(self) -> bool:
        if self.status is not JobStatus.COMPLETED:
            return False
        return self.records_rejected > 0 or self.exit_class == "partial_success_with_rejects"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def can_transition(self, target: JobStatus) -> bool:
        return JobStatus(target) in TRANSITIONS[self.status]

    def transition(self, target: JobStatus, reason: Optional[str] = None) -> None:
        target = JobStatus(target)
        if not self.can_transition(target):
            raise InvalidTransition(f"{self.status.value} -> {target.value} is not allowed")

        now = time.monotonic()
        stamp = _timestamp()
        if self.phase_timings:
            last = self.phase_timings[-1]
            last["finished"] = stamp
            last["seconds"] = round(now - (self._phase_clock or now), 3)
        self.phase_timings.append({"phase": target.value, "started": stamp, "finished": None, "seconds": None})
        self._phase_clock = now

        record = {"time": stamp, "from": self.status.value, "to": target.value}
        if reason:
            record["reason"] = reason
        self.history.append(record)
        self.status = target

        if target.is_terminal:
            self.finished = stamp
            self.phase_timings[-1].update(finished=stamp, seconds=0.0)

    def fail(self, reason: str, terminal: JobStatus = JobStatus.FAILED,
             error: Optional[Exception] = None) -> None:
        """Record the failure context and move to a terminal state."""
        self.failure = reason
        self.error = error
        self.failure_phase = self.status.value
        self.transition(terminal, reason)

    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "correlation_id": self.correlation_id,
            "status": self.status.value,
            "completed_with_rejects": self.completed_with_rejects,
            "started": self.started,
            "finished": self.finished,
            "input_file": self.input_file,
            "records_read": self.records_read,
            "records_valid": self.records_valid,
            "records_rejected": self.records_rejected,
            "records_loaded": self.records_loaded,
            "threshold": self.threshold,
            "control_file": self.control_file,
            "exit_class": self.exit_class,
            "load_result": self.load_result,
            "metrics": self.metrics,
            "artifacts": self.artifacts,
            "failure": self.failure,
            "failure_phase": self.failure_phase,
            "failure_type": type(self.error).__name__ if self.error is not None else None,
            "history": list(self.history),
            "phases": list(self.phase_timings),
        }
