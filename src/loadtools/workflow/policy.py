from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

# ---------------------------------------------------------------------------
# Retry profiles (optional presets)
# ---------------------------------------------------------------------------

RETRY_PROFILES: Dict[str, Dict[str, Any]] = {
    "none": {"max_retries": 0},
    "conservative": {"max_retries": 1, "base_delay": 30.0},
    "default": {"max_retries": 3, "base_delay": 10.0},
    "aggressive": {"max_retries": 5, "base_delay": 5.0},
}


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    Fields:
      max_retries: retries allowed after the first attempt
      base_delay:  seconds before the first retry
      max_delay:   cap applied to base_delay * 2**attempt
    """

    max_retries: int = 3
    base_delay: float = 10.0
    max_delay: float = 300.0

    @classmethod
    def from_config(cls, cfg: Dict[str, Any] | None, **defaults: Any) -> "RetryPolicy":
        """
        Build from a config entry:

        retry:
          profile: default
          max_retries: 3      # alias: attempts
          base_delay: 10
          max_delay: 300
        """
        base = {"max_retries": cls.max_retries, "base_delay": cls.base_delay, "max_delay": cls.max_delay}
        base.update(defaults)
        if cfg is None:
            return cls(**base)

        cfg = dict(cfg)
        profile_name = cfg.pop("profile", None)
        profile_data = RETRY_PROFILES.get(profile_name, {}) if profile_name else {}
        if "attempts" in cfg:
            cfg["max_retries"] = cfg.pop("attempts")

        merged = {**base, **profile_data, **cfg}
        policy = cls(
            max_retries=int(merged["max_retries"]),
            base_delay=float(merged["base_delay"]),
            max_delay=float(merged["max_delay"]),
        )
        if policy.max_retries < 0 or policy.base_delay < 0 or policy.max_delay < 0:
            raise ValueError(f"retry settings must be non-negative: {policy}")
        return policy

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def start(self) -> "RetrySchedule":
        return RetrySchedule(policy=self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_retries": self.max_retries,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
        }


# ---------------------------------------------------------------------------
# RetrySchedule: one run of the policy
# ---------------------------------------------------------------------------

@dataclass
class RetrySchedule:
    """
    State machine for a single retried operation.

      RUNNING --fail--> (retries left) RUNNING, delay recorded
      RUNNING --fail--> (none left)    EXHAUSTED
      RUNNING --ok-->   SUCCEEDED

    The schedule never sleeps itself; callers wait ``next_delay`` using
    whatever clock or cancellation primitive they own.
    """

    policy: RetryPolicy
    retries_used: int = 0
    state: str = "RUNNING"
    history: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.state == "EXHAUSTED"

    @property
    def finished(self) -> bool:
        return self.state in ("EXHAUSTED", "SUCCEEDED")

    def record_success(self, **detail: Any) -> None:
        self._require_running()
        self.history.append({"attempt": self.retries_used, "outcome": "success", **detail})
        self.state = "SUCCEEDED"

    def record_failure(self, **detail: Any) -> Optional[float]:
        """
        Register a failed attempt. Returns the delay to wait before the next
        attempt, or None once the retry budget is spent.
        """
        self._require_running()
        self.history.append({"attempt": self.retries_used, "outcome": "failure", **detail})
        if self.retries_used >= self.policy.max_retries:
            self.state = "EXHAUSTED"
            return None
        delay = self.policy.delay_for(self.retries_used)
        self.retries_used += 1
        self.history[-1]["next_delay"] = delay
        return delay

    def _require_running(self) -> None:
        if self.finished:
            raise RuntimeError(f"retry schedule already {self.state.lower()}")


def wait_for_retry(delay: float, cancelled: Optional[Callable[[float], bool]] = None) -> bool:
    """
    Block for ``delay`` seconds. ``cancelled`` is an Event.wait-like callable
    returning True when the wait was interrupted. Returns True if cancelled.
    """
    if cancelled is None:
        time.sleep(delay)
        return False
    return bool(cancelled(delay))
