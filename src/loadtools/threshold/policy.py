from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from loadtools.workflow.policy import RetryPolicy


class ThresholdAction(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"
    ALERT_ONLY = "alert_only"
    RETRY_WITH_DELAY = "retry_with_delay"


class Decision(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"
    ALERT = "alert"
    RETRY_SCHEDULED = "retry_scheduled"


# ---------------------------------------------------------------------------
# Threshold profiles (optional presets)
# ---------------------------------------------------------------------------

THRESHOLD_PROFILES: Dict[str, Dict[str, Any]] = {
    "strict": {"max_errors": 1, "action": "stop"},
    "default": {"max_error_rate": 0.05, "action": "stop"},
    "lenient": {"max_error_rate": 0.10, "action": "alert_only"},
}


@dataclass(frozen=True)
class ThresholdPolicy:
    """
    Error limits for one job.

    Fields:
      max_errors:     breach when the error count reaches this value
      max_warnings:   breach when the warning count reaches this value
      max_error_rate: breach when errors / records exceeds this fraction
      action:         what a breach decides
      retry:          backoff for RETRY_WITH_DELAY
      warning_ratio:  fraction of max_errors at which an early warning is logged
    """

    max_errors: Optional[int] = None
    max_warnings: Optional[int] = None
    max_error_rate: Optional[float] = None
    action: ThresholdAction = ThresholdAction.STOP
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    warning_ratio: float = 0.75

    @classmethod
    def from_config(cls, cfg: Dict[str, Any] | None) -> "ThresholdPolicy":
        """
        Build from a job config entry:

        threshold:
          profile: default
          max_errors: 100
          max_warnings: 1000
          max_error_rate: 0.05
          action: retry_with_delay
          retry: {attempts: 3, base_delay: 5, max_delay: 60}
        """
        if cfg is None:
            return cls()

        cfg = dict(cfg)
        profile_name = cfg.pop("profile", None)
        if profile_name is not None and profile_name not in THRESHOLD_PROFILES:
            raise ValueError(f"unknown threshold profile {profile_name!r}")
        merged = {**THRESHOLD_PROFILES.get(profile_name, {}), **cfg}

        def positive_int(key: str) -> Optional[int]:
            v = merged.get(key)
            if v is None:
                return None
            if int(v) <= 0:
                raise ValueError(f"{key} must be positive")
            return int(v)

        rate = merged.get("max_error_rate")
        if rate is not None and not 0 <= float(rate) <= 1:
            raise ValueError("max_error_rate must be between 0 and 1")

        try:
            action = ThresholdAction(str(merged.get("action", "stop")).lower())
        except ValueError:
            raise ValueError(f"unknown threshold action {merged.get('action')!r}") from None

        return cls(
            max_errors=positive_int("max_errors"),
            max_warnings=positive_int("max_warnings"),
            max_error_rate=float(rate) if rate is not None else None,
            action=action,
            retry=RetryPolicy.from_config(merged.get("retry"), base_delay=5.0, max_delay=60.0),
            warning_ratio=float(merged.get("warning_ratio", 0.75)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_errors": self.max_errors,
            "max_warnings": self.max_warnings,
            "max_error_rate": self.max_error_rate,
            "action": self.action.value,
            "retry": self.retry.to_dict(),
        }
