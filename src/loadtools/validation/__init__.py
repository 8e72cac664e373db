"""
Record validation.

Exports the public API:
- ValidationEngine, ValidationContext
- ValidationRule, FieldValidationResult, RuleKind, Severity
- build_validation_rules
- BUSINESS_RULES registry
"""
from .engine import ValidationContext, ValidationEngine
from .reference import ReferenceCache
from .registry import BUSINESS_RULES, BusinessRuleRegistry
from .rules import build_validation_rules, rules_for_stage
from .types import FieldValidationResult, RuleKind, Severity, ValidationRule
