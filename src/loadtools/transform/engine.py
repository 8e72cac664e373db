from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from loadtools.csvpipe.mapping import format_target_value
from loadtools.csvpipe.types import (
    CompositeRule,
    ConditionalRule,
    ConstantRule,
    ExpressionRule,
    FieldMappingRule,
    FieldRef,
    LookupRule,
    SourceRecord,
    SourceRule,
)
from loadtools.errors import (
    EXPRESSION_FAILURE,
    LOOKUP_FAILURE,
    MISSING_SOURCE_FIELD,
    NO_MATCHING_CONDITION,
    TransformationError,
)
from loadtools.providers.base import NOT_FOUND
from loadtools.transform.cache import LookupCache
from loadtools.expression import ExpressionError

log = logging.getLogger("loadtools.transform")

Record = Union[SourceRecord, Mapping[str, Any]]


def _fields(record: Record) -> Mapping[str, Any]:
    return record.fields if isinstance(record, SourceRecord) else record


def _text(value: Any) -> str:
    return "" if value is None else str(value)


class TransformationEngine:
    """
    Evaluates field mapping rules against source records.

    Failures are returned, never raised: ``evaluate`` yields
    ``(value, None)`` or ``(None, TransformationError)``.
    """

    def __init__(self, lookup_provider: Any = None, lookup_cache: Optional[LookupCache] = None):
        self.lookup_provider = lookup_provider
        self.lookup_cache = lookup_cache

    # ------------------------------------------------------------------
    def evaluate(
        self,
        rule: FieldMappingRule,
        record: Record,
        lookup_cache: Optional[LookupCache] = None,
    ) -> Tuple[Optional[str], Optional[TransformationError]]:
        cache = lookup_cache if lookup_cache is not None else self.lookup_cache
        try:
            raw = self._resolve(rule, _fields(record), cache)
            return format_target_value(rule.target, raw), None
        except TransformationError as err:
            return None, err

    def transform_record(
        self,
        rules: Sequence[FieldMappingRule],
        record: Record,
        lookup_cache: Optional[LookupCache] = None,
    ) -> Tuple[Dict[str, Optional[str]], List[TransformationError]]:
        """Apply every rule; output is keyed by target name in position order."""
        output: Dict[str, Optional[str]] = {}
        errors: List[TransformationError] = []
        for rule in sorted(rules, key=lambda r: r.target.position):
            value, err = self.evaluate(rule, record, lookup_cache)
            output[rule.target.name] = value
            if err is not None:
                errors.append(err)
        return output, errors

    # ------------------------------------------------------------------
    # Rule kinds
    # ------------------------------------------------------------------
    def _resolve(self, rule: FieldMappingRule, fields: Mapping[str, Any], cache: Optional[LookupCache]) -> Any:
        if isinstance(rule, SourceRule):
            return self._source(rule, fields)
        if isinstance(rule, ConstantRule):
            return rule.value
        if isinstance(rule, CompositeRule):
            return rule.delimiter.join(_text(fields.get(name)) for name in rule.source_fields)
        if isinstance(rule, ConditionalRule):
            return self._conditional(rule, fields)
        if isinstance(rule, LookupRule):
            return self._lookup(rule, fields, cache)
        if isinstance(rule, ExpressionRule):
            return self._expression(rule, fields)
        raise TypeError(f"unsupported mapping rule: {type(rule).__name__}")

    def _source(self, rule: SourceRule, fields: Mapping[str, Any]) -> Any:
        value = fields.get(rule.source_field)
        if value is None or (rule.default is not None and _text(value).strip() == ""):
            if rule.default is None:
                raise TransformationError(
                    MISSING_SOURCE_FIELD, rule.target.name,
                    f"source field {rule.source_field!r} is absent",
                )
            return rule.default
        return value

    def _conditional(self, rule: ConditionalRule, fields: Mapping[str, Any]) -> Any:
        # first match wins; later predicates are never evaluated
        for index, (predicate, then_value) in enumerate(rule.branches):
            try:
                matched = predicate.evaluate(fields)
            except ExpressionError as e:
                raise TransformationError(
                    EXPRESSION_FAILURE, rule.target.name, f"condition {index + 1}: {e}"
                ) from e
            if matched:
                return self._branch_value(rule, then_value, fields)
        if rule.else_value is not None:
            return self._branch_value(rule, rule.else_value, fields)
        if rule.default is not None:
            return rule.default
        raise TransformationError(NO_MATCHING_CONDITION, rule.target.name, "no condition matched")

    @staticmethod
    def _branch_value(rule: ConditionalRule, value: Any, fields: Mapping[str, Any]) -> Any:
        if not isinstance(value, FieldRef):
            return value
        if fields.get(value.name) is None:
            raise TransformationError(
                MISSING_SOURCE_FIELD, rule.target.name, f"branch field {value.name!r} is absent"
            )
        return fields[value.name]

    def _lookup(self, rule: LookupRule, fields: Mapping[str, Any], cache: Optional[LookupCache]) -> Any:
        key = fields.get(rule.source_field)
        if key is None:
            if rule.default is not None:
                return rule.default
            raise TransformationError(
                MISSING_SOURCE_FIELD, rule.target.name,
                f"lookup key field {rule.source_field!r} is absent",
            )
        if self.lookup_provider is None:
            raise TransformationError(LOOKUP_FAILURE, rule.target.name, "no lookup provider configured")

        key = _text(key).strip()

        def load() -> Any:
            return self.lookup_provider.query(rule.lookup_table, key)

        try:
            if rule.cacheable and cache is not None:
                value = cache.get_or_load(rule.lookup_table, key, load)
            else:
                value = load()
        except Exception as e:
            log.warning("Lookup %s[%s] failed: %s", rule.lookup_table, key, e)
            raise TransformationError(
                LOOKUP_FAILURE, rule.target.name, f"{rule.lookup_table}[{key}]: {e}"
            ) from e

        if value is NOT_FOUND:
            if rule.default is not None:
                return rule.default
            raise TransformationError(
                LOOKUP_FAILURE, rule.target.name, f"key {key!r} not found in {rule.lookup_table}"
            )
        return value

    def _expression(self, rule: ExpressionRule, fields: Mapping[str, Any]) -> Any:
        try:
            value = rule.formula.evaluate(fields)
        except ExpressionError as e:
            if rule.default is not None:
                return rule.default
            raise TransformationError(EXPRESSION_FAILURE, rule.target.name, str(e)) from e
        if value is None:
            if rule.default is not None:
                return rule.default
            raise TransformationError(EXPRESSION_FAILURE, rule.target.name, "expression produced no value")
        return value
