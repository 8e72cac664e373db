from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .types import ValidationRule

# A business rule receives the record fields and its rule definition.
# True/None → pass, False → fail with the default message, str → fail with that message.
BusinessRule = Callable[[Mapping[str, Any], ValidationRule], Union[bool, str, None]]


class BusinessRuleRegistry:
    def __init__(self) -> None:
        self._rules: Dict[str, BusinessRule] = {}

    def register(self, name: str, fn: Optional[BusinessRule] = None):
        """Register directly, or use as ``@registry.register("name")``."""
        if fn is not None:
            self._rules[name] = fn
            return fn

        def deco(f: BusinessRule) -> BusinessRule:
            self._rules[name] = f
            return f

        return deco

    def get(self, name: str) -> BusinessRule:
        if name not in self._rules:
            raise KeyError(f"unknown business rule {name!r}")
        return self._rules[name]

    def __contains__(self, name: str) -> bool:
        return name in self._rules

    def names(self) -> List[str]:
        return sorted(self._rules)


BUSINESS_RULES = BusinessRuleRegistry()


@BUSINESS_RULES.register("expression")
def expression_rule(record: Mapping[str, Any], rule: ValidationRule) -> bool:
    """Passes when the rule's pre-compiled ``expression`` param is truthy for the record."""
    return bool(rule.compiled.evaluate(record))
