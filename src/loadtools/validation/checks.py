from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

import phonenumbers
from phonenumbers import NumberParseException

from loadtools.csvpipe.formats import to_decimal, to_strftime

from .types import RuleKind, ValidationRule

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
SSN_PATTERN = re.compile(r"^(\d{3}-\d{2}-\d{4}|\d{9})$")
NUMERIC_PATTERN = re.compile(r"^[+-]?\d+(\.\d+)?$")
INTEGER_PATTERN = re.compile(r"^[+-]?\d{1,3}(,\d{3})*$|^[+-]?\d+$")
ACCOUNT_NUMBER_PATTERN = re.compile(r"^[0-9]{8,20}$")
RANGE_EXPRESSION = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*-\s*(-?\d+(?:\.\d+)?)\s*$")

DEFAULT_DATE_FORMAT = "yyyy-MM-dd"
DATE_FALLBACK_FORMATS = ("yyyy-MM-dd", "MM/dd/yyyy", "dd-MM-yyyy", "yyyyMMdd")
BOOLEAN_VALUES = {"true", "false", "1", "0", "y", "n", "yes", "no"}
DATA_TYPES = ("STRING", "INTEGER", "LONG", "DECIMAL", "DATE", "DATETIME", "BOOLEAN")

Check = Callable[[str, ValidationRule], Optional[str]]


def is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def _parses(value: str, mask: str) -> bool:
    try:
        datetime.strptime(value, to_strftime(mask))
    except ValueError:
        return False
    return True


def parse_range(params: Dict[str, Any]) -> Tuple[Optional[Decimal], Optional[Decimal]]:
    """``min``/``max`` params, or a ``range: "1-100"`` expression."""
    if params.get("range") is not None:
        m = RANGE_EXPRESSION.match(str(params["range"]))
        if not m:
            raise ValueError(f"invalid range expression {params['range']!r}")
        return Decimal(m.group(1)), Decimal(m.group(2))
    lo = params.get("min")
    hi = params.get("max")
    return (
        to_decimal(lo) if lo is not None else None,
        to_decimal(hi) if hi is not None else None,
    )


# ---------------------------------------------------------------------
# Field-level checks: return a failure message, or None when the value passes
# ---------------------------------------------------------------------

def check_required(value: str, rule: ValidationRule) -> Optional[str]:
    return "value is required" if is_blank(value) else None


def check_length(value: str, rule: ValidationRule) -> Optional[str]:
    n = len(value)
    exact = rule.params.get("length")
    lo = rule.params.get("min_length")
    hi = rule.params.get("max_length")
    if exact is not None and n != int(exact):
        return f"length {n} differs from required length {exact}"
    if lo is not None and n < int(lo):
        return f"length {n} is below minimum {lo}"
    if hi is not None and n > int(hi):
        return f"length {n} exceeds maximum {hi}"
    return None


def check_data_type(value: str, rule: ValidationRule) -> Optional[str]:
    dtype = str(rule.params.get("data_type", "STRING")).upper()
    v = value.strip()
    if dtype == "STRING":
        return None
    if dtype in ("INTEGER", "LONG"):
        ok = bool(INTEGER_PATTERN.match(v))
    elif dtype == "DECIMAL":
        ok = bool(NUMERIC_PATTERN.match(v.replace(",", "")))
    elif dtype == "DATE":
        masks = (rule.params["format"],) if rule.params.get("format") else DATE_FALLBACK_FORMATS
        ok = any(_parses(v, m) for m in masks)
    elif dtype == "DATETIME":
        try:
            datetime.fromisoformat(v)
            ok = True
        except ValueError:
            ok = False
    elif dtype == "BOOLEAN":
        ok = v.lower() in BOOLEAN_VALUES
    else:
        return f"unsupported data type {dtype}"
    return None if ok else f"value is not a valid {dtype}"


def check_pattern(value: str, rule: ValidationRule) -> Optional[str]:
    pattern = rule.compiled
    return None if pattern.fullmatch(value) else f"value does not match pattern {pattern.pattern}"


def check_email(value: str, rule: ValidationRule) -> Optional[str]:
    return None if EMAIL_PATTERN.match(value.strip()) else "invalid email address"


def check_phone(value: str, rule: ValidationRule) -> Optional[str]:
    region = rule.params.get("region", "US")
    try:
        number = phonenumbers.parse(value, region)
    except NumberParseException:
        return "invalid phone number"
    return None if phonenumbers.is_valid_number(number) else "invalid phone number"


def check_ssn(value: str, rule: ValidationRule) -> Optional[str]:
    v = value.strip()
    if not SSN_PATTERN.match(v):
        return "invalid SSN format"
    digits = v.replace("-", "")
    if digits[:3] == "000" or digits[3:5] == "00" or digits[5:] == "0000":
        return "invalid SSN: zero group"
    return None


def check_numeric(value: str, rule: ValidationRule) -> Optional[str]:
    v = value.strip()
    if not NUMERIC_PATTERN.match(v):
        return "value is not numeric"
    max_scale = rule.params.get("max_scale")
    if max_scale is not None and "." in v and len(v.split(".", 1)[1]) > int(max_scale):
        return f"more than {max_scale} decimal places"
    return None


def check_date_format(value: str, rule: ValidationRule) -> Optional[str]:
    mask = rule.params.get("format", DEFAULT_DATE_FORMAT)
    return None if _parses(value.strip(), mask) else f"date does not match format {mask}"


def check_range(value: str, rule: ValidationRule) -> Optional[str]:
    try:
        number = to_decimal(value)
    except ValueError:
        return "value is not numeric"
    lo, hi = rule.compiled
    if lo is not None and number < lo:
        return f"value {value} is below minimum {lo}"
    if hi is not None and number > hi:
        return f"value {value} exceeds maximum {hi}"
    return None


def check_account_number(value: str, rule: ValidationRule) -> Optional[str]:
    v = value.strip()
    pattern = rule.compiled or ACCOUNT_NUMBER_PATTERN
    if not pattern.fullmatch(v):
        return "invalid account number format"
    lo = rule.params.get("min_length")
    hi = rule.params.get("max_length")
    if (lo is not None and len(v) < int(lo)) or (hi is not None and len(v) > int(hi)):
        return "account number has invalid length"
    return None


FIELD_CHECKS: Dict[RuleKind, Check] = {
    RuleKind.REQUIRED: check_required,
    RuleKind.LENGTH: check_length,
    RuleKind.DATA_TYPE: check_data_type,
    RuleKind.PATTERN: check_pattern,
    RuleKind.EMAIL: check_email,
    RuleKind.PHONE: check_phone,
    RuleKind.SSN: check_ssn,
    RuleKind.NUMERIC: check_numeric,
    RuleKind.DATE_FORMAT: check_date_format,
    RuleKind.RANGE: check_range,
    RuleKind.ACCOUNT_NUMBER: check_account_number,
}
