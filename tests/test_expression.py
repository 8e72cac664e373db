from decimal import Decimal

import pytest

from loadtools.expression import (
    Expression,
    ExpressionEvaluationError,
    ExpressionSecurityError,
    ExpressionSyntaxError,
)


# -------------------------------------------------------
# Evaluation
# -------------------------------------------------------

def test_comparison_on_bare_field_names():
    expr = Expression("status == 'A'")
    assert expr.evaluate({"status": "A"}) is True
    assert expr.evaluate({"status": "T"}) is False
    assert expr.fields == ("status",)


def test_plus_concatenates_text_and_adds_numbers():
    assert Expression("first + ' ' + last").evaluate({"first": "Jane", "last": "Doe"}) == "Jane Doe"
    assert Expression("amount + fee").evaluate({"amount": "100", "fee": "50"}) == Decimal("150")
    assert Expression("amount + 0.5").evaluate({"amount": "1,000"}) == Decimal("1000.5")
    assert Expression("code + suffix").evaluate({"code": "A1", "suffix": "7"}) == "A17"
    assert Expression("concat(area, exchange)").evaluate({"area": "202", "exchange": "456"}) == "202456"
    assert Expression("num(a) + num(b)").evaluate({"a": "1.5", "b": "2"}) == Decimal("3.5")
    assert Expression("qty * price").evaluate({"qty": "3", "price": "2.50"}) == Decimal("7.50")


def test_numeric_text_compares_with_numbers():
    row = {"amount": "150", "code": "X9"}
    assert Expression("amount >= 100").evaluate(row) is True
    assert Expression("100 > amount").evaluate(row) is False
    assert Expression("amount == 150").evaluate(row) is True
    assert Expression("amount == '150'").evaluate(row) is True
    assert Expression("code == 9").evaluate(row) is False
    with pytest.raises(ExpressionEvaluationError, match="cannot compare"):
        Expression("code > 9").evaluate(row)


def test_ternary_and_membership():
    expr = Expression("'HIGH' if num(amount) > 100 else 'LOW'")
    assert expr.evaluate({"amount": "150"}) == "HIGH"
    assert expr.evaluate({"amount": "99"}) == "LOW"
    assert Expression("state in ['CA', 'NY']").evaluate({"state": "NY"}) is True


def test_helper_functions():
    row = {"name": "  alice  ", "code": "ABCDEF", "x": ""}
    assert Expression("upper(trim(name))").evaluate(row) == "ALICE"
    assert Expression("substr(code, 2, 3)").evaluate(row) == "BCD"
    assert Expression("coalesce(x, 'fallback')").evaluate(row) == "fallback"
    assert Expression("round('2.345', 2)").evaluate(row) == Decimal("2.35")


def test_row_access_forms():
    row = {"a": "1"}
    assert Expression("row['a']").evaluate(row) == "1"
    assert Expression("row.get('missing', 'd')").evaluate(row) == "d"


def test_missing_field_is_evaluation_error():
    with pytest.raises(ExpressionEvaluationError):
        Expression("missing == 'x'").evaluate({})


def test_non_numeric_arithmetic_is_evaluation_error():
    with pytest.raises(ExpressionEvaluationError):
        Expression("a * 2").evaluate({"a": "abc"})


def test_division_by_zero_is_evaluation_error():
    with pytest.raises(ExpressionEvaluationError):
        Expression("num(a) / 0").evaluate({"a": "1"})


# -------------------------------------------------------
# Rejection at parse time
# -------------------------------------------------------

@pytest.mark.parametrize("source", [
    "__import__('os')",
    "open('/etc/passwd')",
    "row.__class__",
    "[x for x in row]",
    "lambda: 1",
])
def test_forbidden_constructs(source):
    with pytest.raises(ExpressionSecurityError):
        Expression(source)


def test_syntax_error():
    with pytest.raises(ExpressionSyntaxError):
        Expression("status ==")
