from __future__ import annotations

import re
from typing import Any, Dict, List, Sequence, Tuple

from loadtools.errors import ConfigurationError
from loadtools.expression import Expression, ExpressionError

from .checks import DATA_TYPES, parse_range
from .registry import BUSINESS_RULES, BusinessRuleRegistry
from .types import CONFIGURABLE, FIELD_LEVEL, RuleKind, Severity, STAGES, ValidationRule

_RESERVED = {"id", "kind", "field", "fields", "severity", "order", "stage", "message", "enabled"}


def _compile_rule(kind: RuleKind, params: Dict[str, Any], where: str, registry: BusinessRuleRegistry) -> Any:
    """Validate params and pre-compile anything reusable (regex, range bounds, expressions)."""
    def need(*keys: str) -> None:
        missing = [k for k in keys if params.get(k) in (None, "")]
        if missing:
            raise ConfigurationError(f"{where}: {kind.value} rule needs {missing}")

    try:
        if kind is RuleKind.PATTERN:
            need("pattern")
            return re.compile(str(params["pattern"]))
        if kind is RuleKind.ACCOUNT_NUMBER and params.get("pattern"):
            return re.compile(str(params["pattern"]))
        if kind is RuleKind.RANGE:
            bounds = parse_range(params)
            if bounds == (None, None):
                raise ConfigurationError(f"{where}: range rule needs min, max or range")
            return bounds
        if kind is RuleKind.LENGTH and not any(k in params for k in ("length", "min_length", "max_length")):
            raise ConfigurationError(f"{where}: length rule needs length, min_length or max_length")
        if kind is RuleKind.DATA_TYPE:
            dtype = str(params.get("data_type", "STRING")).upper()
            if dtype not in DATA_TYPES:
                raise ConfigurationError(f"{where}: unknown data type {dtype!r}")
        if kind is RuleKind.REFERENTIAL_INTEGRITY:
            need("reference_table", "reference_column")
        if kind is RuleKind.CUSTOM_QUERY:
            need("query")
        if kind is RuleKind.BUSINESS_RULE:
            need("rule")
            if params["rule"] not in registry:
                raise ConfigurationError(
                    f"{where}: unknown business rule {params['rule']!r}; known: {registry.names()}"
                )
            if params["rule"] == "expression":
                need("expression")
                return Expression(str(params["expression"]))
    except re.error as e:
        raise ConfigurationError(f"{where}: invalid regex: {e}") from e
    except ExpressionError as e:
        raise ConfigurationError(f"{where}: {e}") from e
    except ValueError as e:
        raise ConfigurationError(f"{where}: {e}") from e
    return None


def build_validation_rules(
    entries: Sequence[Dict[str, Any]],
    registry: BusinessRuleRegistry = BUSINESS_RULES,
) -> Tuple[ValidationRule, ...]:
    """
    Normalise the ``validations`` section. Keys other than the reserved ones
    become rule params:

      - id: amount_range
        kind: range
        field: amount
        min: 0
        max: 10000
        severity: warning
        order: 20
    """
    rules: List[Tuple[int, int, ValidationRule]] = []
    seen_ids = set()
    for i, entry in enumerate(entries or []):
        where = f"validations[{i}]"
        if not isinstance(entry, dict):
            raise ConfigurationError(f"{where}: rule must be a mapping")
        if entry.get("enabled", True) is False:
            continue

        try:
            kind = RuleKind(str(entry.get("kind", "")).lower())
        except ValueError:
            raise ConfigurationError(f"{where}: unknown rule kind {entry.get('kind')!r}") from None
        if kind not in CONFIGURABLE:
            raise ConfigurationError(f"{where}: {kind.value} cannot be configured as a rule")

        fields = entry.get("fields")
        if fields is None and entry.get("field") is not None:
            fields = [entry["field"]]
        fields = tuple(str(f) for f in (fields or []))
        if not fields and (kind in FIELD_LEVEL or kind in (RuleKind.UNIQUENESS, RuleKind.REFERENTIAL_INTEGRITY)):
            raise ConfigurationError(f"{where}: {kind.value} rule needs 'field' or 'fields'")

        try:
            severity = Severity(str(entry.get("severity", "error")).lower())
        except ValueError:
            raise ConfigurationError(f"{where}: unknown severity {entry.get('severity')!r}") from None

        stage = str(entry.get("stage", "pre")).lower()
        if stage not in STAGES:
            raise ConfigurationError(f"{where}: stage must be one of {STAGES}")

        rule_id = str(entry.get("id") or f"{kind.value}_{i}")
        if rule_id in seen_ids:
            raise ConfigurationError(f"{where}: duplicate rule id {rule_id!r}")
        seen_ids.add(rule_id)

        params = {k: v for k, v in entry.items() if k not in _RESERVED}
        order = int(entry.get("order", i))
        rule = ValidationRule(
            rule_id=rule_id,
            kind=kind,
            fields=fields,
            severity=severity,
            order=order,
            stage=stage,
            message=entry.get("message"),
            params=params,
            compiled=_compile_rule(kind, params, where, registry),
        )
        rules.append((order, i, rule))

    return tuple(r for _, _, r in sorted(rules, key=lambda t: (t[0], t[1])))


def rules_for_stage(rules: Sequence[ValidationRule], stage: str) -> Tuple[ValidationRule, ...]:
    return tuple(r for r in rules if r.stage == stage)
