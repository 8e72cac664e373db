from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple, Union

from loadtools.csvpipe.types import SourceRecord
from loadtools.errors import TransformationError

from .checks import FIELD_CHECKS, is_blank
from .reference import ReferenceCache
from .registry import BUSINESS_RULES, BusinessRuleRegistry
from .types import (
    FIELD_LEVEL,
    RECORD_FIELD,
    FieldValidationResult,
    RuleKind,
    Severity,
    ValidationRule,
)

log = logging.getLogger("loadtools.validation")

Record = Union[SourceRecord, Mapping[str, Any]]


class ValidationContext:
    """
    Per-execution state for record-level rules: the uniqueness sets, the
    reference cache and the external query provider. A new context is
    created for every job execution.
    """

    def __init__(
        self,
        reference_cache: Optional[ReferenceCache] = None,
        query_provider: Any = None,
        registry: BusinessRuleRegistry = BUSINESS_RULES,
    ):
        self.reference_cache = reference_cache
        self.query_provider = query_provider
        self.registry = registry
        self._seen: Dict[str, Set[Tuple[str, ...]]] = {}
        self._seen_lock = threading.Lock()

    def first_occurrence(self, rule_id: str, key: Tuple[str, ...]) -> bool:
        with self._seen_lock:
            seen = self._seen.setdefault(rule_id, set())
            if key in seen:
                return False
            seen.add(key)
            return True

    def stats(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"unique_keys": sum(len(s) for s in self._seen.values())}
        if self.reference_cache is not None:
            out["reference_cache"] = self.reference_cache.stats()
        return out


class ValidationEngine:
    """
    Runs ordered validation rules against one record. Every rule yields
    exactly one result per field it targets (rules without fields yield one
    record-level result), whether it passes or fails.
    """

    def __init__(self, context: Optional[ValidationContext] = None):
        self.context = context or ValidationContext()

    def validate(
        self,
        record: Record,
        rules: Sequence[ValidationRule],
        line: Optional[int] = None,
    ) -> List[FieldValidationResult]:
        if isinstance(record, SourceRecord):
            fields, line = record.fields, record.line if line is None else line
        else:
            fields = record
        results: List[FieldValidationResult] = []
        for rule in rules:
            results.extend(self._apply(rule, fields, line))
        return results

    @staticmethod
    def transformation_failure(err: TransformationError, line: Optional[int] = None) -> FieldValidationResult:
        return FieldValidationResult(
            field=err.field,
            kind=RuleKind.TRANSFORMATION,
            passed=False,
            severity=Severity.ERROR,
            message=f"{err.kind}: {err.message}",
            rule_id=err.kind,
            line=line,
        )

    # ------------------------------------------------------------------
    def _result(self, rule: ValidationRule, field: str, value: Any,
                failure: Optional[str], line: Optional[int]) -> FieldValidationResult:
        return FieldValidationResult(
            field=field,
            kind=rule.kind,
            passed=failure is None,
            severity=rule.severity,
            message="passed" if failure is None else (rule.message or failure),
            value=value,
            rule_id=rule.rule_id,
            line=line,
        )

    def _apply(self, rule: ValidationRule, fields: Mapping[str, Any],
               line: Optional[int]) -> Iterator[FieldValidationResult]:
        kind = rule.kind
        if kind in FIELD_LEVEL:
            check = FIELD_CHECKS[kind]
            for name in rule.fields:
                value = fields.get(name)
                if kind is not RuleKind.REQUIRED and is_blank(value):
                    failure = None
                else:
                    failure = check("" if value is None else str(value), rule)
                yield self._result(rule, name, value, failure, line)
        elif kind is RuleKind.REFERENTIAL_INTEGRITY:
            for name in rule.fields:
                value = fields.get(name)
                yield self._result(rule, name, value, self._referential(rule, value), line)
        elif kind is RuleKind.UNIQUENESS:
            key = tuple("" if fields.get(f) is None else str(fields.get(f)).strip() for f in rule.fields)
            failure = None
            if any(key) and not self.context.first_occurrence(rule.rule_id, key):
                failure = f"duplicate value for {', '.join(rule.fields)}"
            for name in rule.fields:
                yield self._result(rule, name, fields.get(name), failure, line)
        elif kind is RuleKind.CUSTOM_QUERY:
            for name in rule.fields or (RECORD_FIELD,):
                value = fields.get(name)
                yield self._result(rule, name, value, self._custom_query(rule, fields, name, value), line)
        elif kind is RuleKind.BUSINESS_RULE:
            failure = self._business(rule, fields)
            for name in rule.fields or (RECORD_FIELD,):
                yield self._result(rule, name, fields.get(name), failure, line)
        else:
            raise TypeError(f"unsupported validation rule kind: {kind}")

    def _referential(self, rule: ValidationRule, value: Any) -> Optional[str]:
        if is_blank(value):
            return None
        cache = self.context.reference_cache
        if cache is None:
            return "no reference data provider configured"
        table = rule.params["reference_table"]
        column = rule.params["reference_column"]
        try:
            found = cache.contains(table, column, value)
        except Exception as e:
            log.warning("Reference lookup %s.%s failed: %s", table, column, e)
            return f"reference check failed: {e}"
        return None if found else f"value not found in {table}.{column}"

    def _custom_query(self, rule: ValidationRule, fields: Mapping[str, Any],
                      name: str, value: Any) -> Optional[str]:
        provider = self.context.query_provider
        if provider is None:
            return "no query provider configured"
        bindings = {"value": value, "field": name}
        for bind in rule.params.get("bind_fields") or []:
            bindings[bind] = fields.get(bind)
        try:
            ok = provider.evaluate(rule.params["query"], bindings)
        except Exception as e:
            log.warning("Custom query %s failed: %s", rule.rule_id, e)
            return f"query check failed: {e}"
        return None if ok else "custom query predicate failed"

    def _business(self, rule: ValidationRule, fields: Mapping[str, Any]) -> Optional[str]:
        name = rule.params["rule"]
        try:
            outcome = self.context.registry.get(name)(fields, rule)
        except Exception as e:
            log.warning("Business rule %s raised: %s", name, e)
            return f"business rule {name} failed: {e}"
        if outcome is None or outcome is True:
            return None
        if isinstance(outcome, str):
            return outcome
        return None if outcome else f"business rule {name} not satisfied"
