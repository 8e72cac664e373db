from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from functools import lru_cache
from typing import Any, Union

# Oracle and Java style date mask tokens, longest first at each position.
_MASK_TOKENS = (
    ("YYYY", "%Y"), ("yyyy", "%Y"),
    ("HH24", "%H"),
    ("YY", "%y"), ("yy", "%y"),
    ("MM", "%m"),
    ("DD", "%d"), ("dd", "%d"),
    ("HH", "%H"),
    ("MI", "%M"), ("mm", "%M"),
    ("SS", "%S"), ("ss", "%S"),
)

ISO_DATE = "YYYY-MM-DD"


@lru_cache(maxsize=128)
def to_strftime(mask: str) -> str:
    """Translate a loader/Java date mask (``YYYYMMDD``, ``yyyy-MM-dd``) into strftime syntax."""
    out = []
    i = 0
    while i < len(mask):
        for token, directive in _MASK_TOKENS:
            if mask.startswith(token, i):
                out.append(directive)
                i += len(token)
                break
        else:
            ch = mask[i]
            out.append("%%" if ch == "%" else ch)
            i += 1
    return "".join(out)


def parse_date(value: Union[str, date], mask: str = ISO_DATE) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    return datetime.strptime(str(value).strip(), to_strftime(mask))


def format_date(value: Union[str, date], mask: str = ISO_DATE, source_mask: str = ISO_DATE) -> str:
    return parse_date(value, source_mask).strftime(to_strftime(mask))


def to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"not a number: {value!r}")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    text = str(value).strip().replace(",", "")
    try:
        d = Decimal(text)
    except InvalidOperation as e:
        raise ValueError(f"not a number: {value!r}") from e
    if not d.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return d


def implied_decimal_digits(value: Decimal, scale: int) -> str:
    """
    Digits of |value| with ``scale`` implied decimal places, rounded half-up.

      implied_decimal_digits(Decimal("12.3"), 2)  -> "1230"
      implied_decimal_digits(Decimal("-0.005"), 2) -> "1"
    """
    shifted = abs(value).scaleb(scale).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return str(int(shifted))


def plain_digits(value: Decimal) -> str:
    return format(abs(value), "f")


def apply_sign(body: str, negative: bool, convention: str) -> str:
    if convention == "leading":
        return ("-" if negative else "+") + body
    if convention == "trailing":
        return body + ("-" if negative else "+")
    return ("-" + body) if negative else body
