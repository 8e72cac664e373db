from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class RuleKind(str, Enum):
    REQUIRED = "required"
    LENGTH = "length"
    DATA_TYPE = "data_type"
    PATTERN = "pattern"
    EMAIL = "email"
    PHONE = "phone"
    SSN = "ssn"
    NUMERIC = "numeric"
    DATE_FORMAT = "date_format"
    RANGE = "range"
    REFERENTIAL_INTEGRITY = "referential_integrity"
    UNIQUENESS = "uniqueness"
    ACCOUNT_NUMBER = "account_number"
    CUSTOM_QUERY = "custom_query"
    BUSINESS_RULE = "business_rule"
    # result category for mapping failures; not configurable as a rule
    TRANSFORMATION = "transformation"


FIELD_LEVEL = frozenset({
    RuleKind.REQUIRED,
    RuleKind.LENGTH,
    RuleKind.DATA_TYPE,
    RuleKind.PATTERN,
    RuleKind.EMAIL,
    RuleKind.PHONE,
    RuleKind.SSN,
    RuleKind.NUMERIC,
    RuleKind.DATE_FORMAT,
    RuleKind.RANGE,
    RuleKind.ACCOUNT_NUMBER,
})

RECORD_LEVEL = frozenset({
    RuleKind.REFERENTIAL_INTEGRITY,
    RuleKind.UNIQUENESS,
    RuleKind.CUSTOM_QUERY,
    RuleKind.BUSINESS_RULE,
})

CONFIGURABLE = FIELD_LEVEL | RECORD_LEVEL


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


PRE = "pre"     # source record
POST = "post"   # transformed record
STAGES = (PRE, POST)

RECORD_FIELD = "*"  # field name on results of rules without target fields


@dataclass(frozen=True)
class ValidationRule:
    rule_id: str
    kind: RuleKind
    fields: Tuple[str, ...]
    severity: Severity = Severity.ERROR
    order: int = 0
    stage: str = PRE
    message: Optional[str] = None       # overrides the check's own message
    params: Dict[str, Any] = field(default_factory=dict, hash=False)
    compiled: Any = field(default=None, compare=False, hash=False)   # regex / expression


@dataclass(frozen=True)
class FieldValidationResult:
    field: str
    kind: RuleKind
    passed: bool
    severity: Severity
    message: str
    value: Any = None
    rule_id: Optional[str] = None
    line: Optional[int] = None

    @property
    def is_error(self) -> bool:
        return not self.passed and self.severity is Severity.ERROR

    @property
    def is_warning(self) -> bool:
        return not self.passed and self.severity is Severity.WARNING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "kind": self.kind.value,
            "passed": self.passed,
            "severity": self.severity.value,
            "message": self.message,
            "value": self.value,
            "rule_id": self.rule_id,
            "line": self.line,
        }
