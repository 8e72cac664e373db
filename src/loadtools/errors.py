from __future__ import annotations

from typing import Any, Dict, List, Optional


class LoadToolsError(Exception):
    """Base class for job-level failures."""


class ConfigurationError(LoadToolsError):
    """Configuration is missing, malformed or semantically invalid. The job never starts."""


class InvalidTransition(LoadToolsError):
    pass


# ---------------------------------------------------------------------
# Per-field transformation failures
# ---------------------------------------------------------------------

MISSING_SOURCE_FIELD = "MissingSourceField"
NO_MATCHING_CONDITION = "NoMatchingCondition"
LOOKUP_FAILURE = "LookupFailure"
EXPRESSION_FAILURE = "ExpressionFailure"
FORMAT_FAILURE = "FormatFailure"


class TransformationError(LoadToolsError):
    """
    Typed failure of one field mapping rule. Returned as a value by the
    transformation engine, raised only by the lower-level helpers it wraps.
    """

    def __init__(self, kind: str, field: str, message: str):
        super().__init__(f"{kind} on {field}: {message}")
        self.kind = kind
        self.field = field
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "field": self.field, "message": self.message}


# ---------------------------------------------------------------------
# Job-level failures
# ---------------------------------------------------------------------

class ThresholdBreach(LoadToolsError):
    def __init__(self, reason: str, statistics: Optional[Dict[str, Any]] = None):
        super().__init__(reason)
        self.reason = reason
        self.statistics = statistics or {}


class LoaderError(LoadToolsError):
    """Bulk loader failed after its retries were exhausted."""

    def __init__(self, message: str, result: Any = None, history: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.result = result
        self.history = history or []

    @property
    def retry_count(self) -> int:
        return getattr(self.result, "retry_count", 0)


class LoaderFatal(LoaderError):
    pass


class LoaderTimeout(LoaderError):
    pass


class ReconciliationMismatch(LoadToolsError):
    def __init__(self, expected: int, accounted: int, tolerance: float):
        super().__init__(
            f"expected {expected} records, loader accounted for {accounted} "
            f"(tolerance {tolerance:.2%})"
        )
        self.expected = expected
        self.accounted = accounted
        self.tolerance = tolerance
