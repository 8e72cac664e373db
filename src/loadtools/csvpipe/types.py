from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union


@dataclass(frozen=True)
class SourceRecord:
    line: int                   # 1-based line number in the input file
    fields: Dict[str, str]

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def __contains__(self, name: str) -> bool:
        return name in self.fields


@dataclass(frozen=True)
class TargetField:
    name: str
    position: int               # 1-based ordinal of the output column
    length: Optional[int] = None
    data_type: str = "CHAR"     # CHAR|INTEGER|DECIMAL|DATE
    format: Optional[str] = None          # loader-side date mask, e.g. YYYYMMDD
    source_format: Optional[str] = None   # input date mask
    scale: int = 0              # implied decimal digits for DECIMAL
    sign: str = "none"          # none|leading|trailing
    pad: Optional[str] = None   # none|left|right (None = by type)
    pad_char: Optional[str] = None
    nullif: Optional[str] = None      # loader NULLIF condition, e.g. NAME=BLANKS
    defaultif: Optional[str] = None   # loader DEFAULTIF condition
    trim: bool = False          # loader-side LTRIM(RTRIM())
    case: Optional[str] = None  # upper|lower, applied by the loader
    start: int = 0              # 1-based byte offset, filled in for fixed-width targets

    @property
    def end(self) -> int:
        return self.start + (self.length or 0) - 1

    @property
    def is_numeric(self) -> bool:
        return self.data_type in ("INTEGER", "DECIMAL")


# ---------------------------------------------------------------------
# Field mapping rules (closed set)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class SourceRule:
    target: TargetField
    source_field: str
    default: Optional[str] = None


@dataclass(frozen=True)
class ConstantRule:
    target: TargetField
    value: str = ""


@dataclass(frozen=True)
class CompositeRule:
    target: TargetField
    source_fields: Tuple[str, ...]
    delimiter: str = ""


@dataclass(frozen=True)
class FieldRef:
    """Branch value taken from a source field instead of a literal."""
    name: str


@dataclass(frozen=True)
class ConditionalRule:
    target: TargetField
    branches: Tuple[Tuple[Any, Union[str, FieldRef]], ...]   # (compiled predicate, then-value)
    else_value: Union[str, FieldRef, None] = None
    default: Optional[str] = None


@dataclass(frozen=True)
class LookupRule:
    target: TargetField
    source_field: str
    lookup_table: str
    cacheable: bool = True
    default: Optional[str] = None


@dataclass(frozen=True)
class ExpressionRule:
    target: TargetField
    formula: Any                # compiled expression
    default: Optional[str] = None


FieldMappingRule = Union[
    SourceRule, ConstantRule, CompositeRule, ConditionalRule, LookupRule, ExpressionRule
]

RULE_TYPES: Dict[str, type] = {
    "source": SourceRule,
    "constant": ConstantRule,
    "composite": CompositeRule,
    "conditional": ConditionalRule,
    "lookup": LookupRule,
    "expression": ExpressionRule,
}


@dataclass(frozen=True)
class SourceFormat:
    delimiter: str = ","
    quotechar: str = '"'
    header: bool = True
    columns: Optional[Tuple[str, ...]] = None   # required when header is false
    encoding: str = "utf-8"
    skip_rows: int = 0                          # lines skipped before the header/data
