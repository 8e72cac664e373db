from __future__ import annotations

import re
from dataclasses import replace
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from loadtools.errors import ConfigurationError, FORMAT_FAILURE, TransformationError
from loadtools.expression import Expression, ExpressionError

from .formats import (
    ISO_DATE,
    apply_sign,
    format_date,
    implied_decimal_digits,
    plain_digits,
    to_decimal,
)
from .types import (
    CompositeRule,
    ConditionalRule,
    ConstantRule,
    ExpressionRule,
    FieldMappingRule,
    FieldRef,
    LookupRule,
    RULE_TYPES,
    SourceRule,
    TargetField,
)

DATA_TYPES = ("CHAR", "INTEGER", "DECIMAL", "DATE")
SIGN_CONVENTIONS = ("none", "leading", "trailing")
CASE_CONVERSIONS = ("upper", "lower")
PAD_MODES = ("none", "left", "right")
RECORD_FORMATS = ("delimited", "fixed")

# column names end up unquoted in the control file
TARGET_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_$#]*$")


def _fail(where: str, msg: str) -> ConfigurationError:
    return ConfigurationError(f"{where}: {msg}")


def _opt_str(v: Any) -> Optional[str]:
    return None if v is None else str(v)


def _branch_value(where: str, entry: Dict[str, Any], key: str) -> Union[str, FieldRef, None]:
    field_key = f"{key}_field"
    if key in entry and field_key in entry:
        raise _fail(where, f"give either '{key}' or '{field_key}', not both")
    if entry.get(field_key):
        return FieldRef(str(entry[field_key]))
    return _opt_str(entry.get(key))


def _compile(where: str, source: Any) -> Expression:
    if not isinstance(source, str) or not source.strip():
        raise _fail(where, "expression must be a non-empty string")
    try:
        return Expression(source)
    except ExpressionError as e:
        raise _fail(where, str(e)) from e


# ---------------------------------------------------------------------
# Target fields
# ---------------------------------------------------------------------

def normalize_target(spec: Any, where: str) -> TargetField:
    if isinstance(spec, str):
        spec = {"name": spec}
    if not isinstance(spec, dict) or not spec.get("name"):
        raise _fail(where, "target must be a name or a mapping with 'name'")
    if not TARGET_NAME.match(str(spec["name"])):
        raise _fail(where, f"target name {spec['name']!r} is not a valid column identifier")

    dtype = str(spec.get("type", "CHAR")).upper()
    if dtype not in DATA_TYPES:
        raise _fail(where, f"unknown data type {dtype!r}; expected one of {DATA_TYPES}")
    sign = str(spec.get("sign", "none")).lower()
    if sign not in SIGN_CONVENTIONS:
        raise _fail(where, f"unknown sign convention {sign!r}")
    pad = spec.get("pad")
    if pad is not None and pad not in PAD_MODES:
        raise _fail(where, f"unknown pad mode {pad!r}")
    case = spec.get("case")
    if case is not None and str(case).lower() not in CASE_CONVERSIONS:
        raise _fail(where, f"unknown case conversion {case!r}; expected one of {CASE_CONVERSIONS}")
    pad_char = spec.get("pad_char")
    if pad_char is not None and len(str(pad_char)) != 1:
        raise _fail(where, "pad_char must be a single character")

    length = spec.get("length")
    if length is not None and int(length) <= 0:
        raise _fail(where, "length must be positive")
    position = spec.get("position")
    if position is not None and int(position) <= 0:
        raise _fail(where, "position must be positive")

    return TargetField(
        name=str(spec["name"]),
        position=int(position) if position is not None else 0,
        length=int(length) if length is not None else None,
        data_type=dtype,
        format=_opt_str(spec.get("format")),
        source_format=_opt_str(spec.get("source_format")),
        scale=int(spec.get("scale", 0)),
        sign=sign,
        pad=pad,
        pad_char=_opt_str(pad_char),
        nullif=_loader_condition(where, spec, "nullif"),
        defaultif=_loader_condition(where, spec, "defaultif"),
        trim=bool(spec.get("trim", False)),
        case=str(case).lower() if case is not None else None,
    )


def _loader_condition(where: str, spec: Dict[str, Any], key: str) -> Optional[str]:
    """``true`` means the column is blank; a string is passed to the loader as written."""
    value = spec.get(key)
    if value is None or value is False:
        return None
    if value is True:
        return f"{spec['name']}=BLANKS"
    text = str(value).strip()
    if not text or '"' in text or "\n" in text:
        raise _fail(where, f"{key} must be true or a single-line condition without double quotes")
    return text


def assign_positions(targets: Sequence[TargetField]) -> List[TargetField]:
    """
    Explicit positions must be unique. Omitted positions take the smallest
    free slot in declaration order. The result must cover 1..N exactly.
    """
    taken: Dict[int, str] = {}
    for t in targets:
        if t.position:
            if t.position in taken:
                raise ConfigurationError(
                    f"target position {t.position} used by both {taken[t.position]!r} and {t.name!r}"
                )
            taken[t.position] = t.name

    out: List[TargetField] = []
    next_free = 1
    for t in targets:
        if t.position:
            out.append(t)
            continue
        while next_free in taken:
            next_free += 1
        taken[next_free] = t.name
        out.append(replace(t, position=next_free))

    expected = set(range(1, len(out) + 1))
    actual = {t.position for t in out}
    if actual != expected:
        gaps = sorted(expected - actual)
        raise ConfigurationError(f"target positions must be contiguous from 1; missing {gaps}")
    return out


def assign_offsets(targets: Sequence[TargetField]) -> List[TargetField]:
    """Compute fixed-width byte offsets from position order and lengths."""
    start = 1
    by_pos = {}
    for t in sorted(targets, key=lambda t: t.position):
        if t.length is None:
            raise ConfigurationError(f"fixed-width target {t.name!r} needs a length")
        if t.pad == "none":
            raise ConfigurationError(f"fixed-width target {t.name!r} cannot use pad: none")
        by_pos[t.position] = replace(t, start=start)
        start += t.length
    return [by_pos[t.position] for t in targets]


# ---------------------------------------------------------------------
# Mapping rules
# ---------------------------------------------------------------------

def _build_rule(entry: Dict[str, Any], target: TargetField, where: str) -> FieldMappingRule:
    kind = entry.get("rule")
    if kind not in RULE_TYPES:
        raise _fail(where, f"unknown rule {kind!r}; expected one of {sorted(RULE_TYPES)}")
    default = _opt_str(entry.get("default"))

    if kind == "source":
        if not entry.get("field"):
            raise _fail(where, "source rule needs 'field'")
        return SourceRule(target=target, source_field=str(entry["field"]), default=default)

    if kind == "constant":
        return ConstantRule(target=target, value=str(entry.get("value", "")))

    if kind == "composite":
        fields = entry.get("fields") or []
        if not isinstance(fields, list) or not fields:
            raise _fail(where, "composite rule needs a non-empty 'fields' list")
        return CompositeRule(
            target=target,
            source_fields=tuple(str(f) for f in fields),
            delimiter=str(entry.get("delimiter", "")),
        )

    if kind == "conditional":
        branches = []
        for i, branch in enumerate(entry.get("when") or []):
            at = f"{where}.when[{i}]"
            if not isinstance(branch, dict) or "if" not in branch:
                raise _fail(at, "branch needs 'if' and 'then' or 'then_field'")
            value = _branch_value(at, branch, "then")
            if value is None:
                raise _fail(at, "branch needs 'then' or 'then_field'")
            branches.append((_compile(at, branch["if"]), value))
        if not branches:
            raise _fail(where, "conditional rule needs at least one 'when' branch")
        return ConditionalRule(
            target=target,
            branches=tuple(branches),
            else_value=_branch_value(where, entry, "else"),
            default=default,
        )

    if kind == "lookup":
        if not entry.get("field") or not entry.get("table"):
            raise _fail(where, "lookup rule needs 'field' and 'table'")
        return LookupRule(
            target=target,
            source_field=str(entry["field"]),
            lookup_table=str(entry["table"]),
            cacheable=bool(entry.get("cacheable", True)),
            default=default,
        )

    return ExpressionRule(target=target, formula=_compile(where, entry.get("formula")), default=default)


def build_mapping_rules(entries: Sequence[Dict[str, Any]], record_format: str = "delimited") -> Tuple[FieldMappingRule, ...]:
    """
    Normalise the ``mappings`` section of a job config:

      - target: {name: FULL_NAME, length: 40}
        rule: composite
        fields: [first, last]
        delimiter: " "
      - target: EMP_STATUS
        rule: conditional
        when:
          - {if: "status == 'A'", then: ACTIVE}
        else: INACTIVE
    """
    if record_format not in RECORD_FORMATS:
        raise ConfigurationError(f"unknown record format {record_format!r}")
    if not entries:
        raise ConfigurationError("at least one mapping rule is required")

    targets = [normalize_target(e.get("target"), f"mappings[{i}]") for i, e in enumerate(entries)]
    names = [t.name for t in targets]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ConfigurationError(f"duplicate target fields: {dupes}")

    targets = assign_positions(targets)
    if record_format == "fixed":
        targets = assign_offsets(targets)

    rules = []
    for i, (entry, target) in enumerate(zip(entries, targets)):
        rule = _build_rule(entry, target, f"mappings[{i}]")
        if isinstance(rule, ConstantRule):
            try:
                format_target_value(target, rule.value)
            except TransformationError as e:
                raise _fail(f"mappings[{i}]", e.message) from e
        rules.append(rule)
    return tuple(rules)


# ---------------------------------------------------------------------
# Target value formatting
# ---------------------------------------------------------------------

def format_target_value(target: TargetField, value: Any) -> str:
    """
    Render a resolved value in the target field's declared format (without
    fixed-width padding). Implied decimals and sign conventions apply to
    numeric targets; DATE values are re-masked from ``source_format``.
    """
    if value is None:
        return ""
    if target.data_type != "CHAR" and isinstance(value, str) and value.strip() == "":
        return ""

    try:
        if target.data_type == "DATE":
            text = format_date(value, target.format or ISO_DATE, target.source_format or ISO_DATE)
        elif target.data_type == "INTEGER":
            d = to_decimal(value)
            if d != d.to_integral_value():
                raise ValueError(f"{value!r} is not an integer")
            text = apply_sign(plain_digits(d.to_integral_value()), d < 0, target.sign)
        elif target.data_type == "DECIMAL":
            d = to_decimal(value)
            digits = implied_decimal_digits(d, target.scale) if target.scale else plain_digits(d)
            text = apply_sign(digits, d < 0 and digits.strip("0.") != "", target.sign)
        else:
            text = format(value, "f") if isinstance(value, Decimal) else str(value)
    except ValueError as e:
        raise TransformationError(FORMAT_FAILURE, target.name, str(e)) from e

    if target.length is not None and len(text) > target.length:
        raise TransformationError(
            FORMAT_FAILURE, target.name,
            f"value of length {len(text)} exceeds field length {target.length}",
        )
    return text


def pad_fixed(target: TargetField, text: str) -> str:
    length = target.length or len(text)
    if not text:
        return " " * length
    pad = target.pad or ("left" if target.is_numeric else "right")
    char = target.pad_char or ("0" if target.is_numeric and pad == "left" else " ")
    if pad == "left":
        if char == "0" and text[0] in "+-":
            return text[0] + text[1:].rjust(length - 1, "0")
        return text.rjust(length, char)
    return text.ljust(length, char)
