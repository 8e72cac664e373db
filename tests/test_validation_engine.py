import threading

import pytest

from loadtools.csvpipe.types import SourceRecord
from loadtools.errors import ConfigurationError, TransformationError
from loadtools.providers import CallableQueryProvider, DictLookupProvider
from loadtools.validation import (
    BusinessRuleRegistry,
    ReferenceCache,
    RuleKind,
    Severity,
    ValidationContext,
    ValidationEngine,
    build_validation_rules,
)


# -------------------------------------------------------
# Helpers
# -------------------------------------------------------

def check(entry, value, field="f"):
    """Run one field-level rule against one value; return the single result."""
    rules = build_validation_rules([{"field": field, **entry}])
    results = ValidationEngine().validate({field: value}, rules)
    assert len(results) == 1
    return results[0]


# -------------------------------------------------------
# Field-level kinds
# -------------------------------------------------------

@pytest.mark.parametrize("entry,good,bad", [
    ({"kind": "required"}, "x", "  "),
    ({"kind": "length", "max_length": 3}, "abc", "abcd"),
    ({"kind": "length", "length": 2}, "ab", "a"),
    ({"kind": "data_type", "data_type": "integer"}, "1,234", "12a"),
    ({"kind": "data_type", "data_type": "date"}, "03/15/2024", "15.03.2024"),
    ({"kind": "data_type", "data_type": "boolean"}, "yes", "maybe"),
    ({"kind": "pattern", "pattern": "[A-Z]{3}"}, "ABC", "ABCD"),
    ({"kind": "email"}, "jane.doe@example.com", "jane@"),
    ({"kind": "phone"}, "(202) 456-1111", "12"),
    ({"kind": "ssn"}, "123-45-6789", "000-12-3456"),
    ({"kind": "numeric", "max_scale": 2}, "-10.25", "10.255"),
    ({"kind": "date_format", "format": "yyyyMMdd"}, "20240315", "2024-03-15"),
    ({"kind": "range", "min": 0, "max": 100}, "100", "100.01"),
    ({"kind": "range", "range": "1-10"}, "5", "0"),
    ({"kind": "account_number"}, "12345678", "1234567"),
])
def test_field_level_kinds(entry, good, bad):
    assert check(entry, good).passed
    failed = check(entry, bad)
    assert not failed.passed
    assert failed.kind is RuleKind(entry["kind"])
    assert failed.value == bad


def test_empty_values_only_fail_required():
    assert check({"kind": "email"}, "").passed
    assert check({"kind": "range", "min": 1}, None).passed
    assert not check({"kind": "required"}, None).passed


def test_results_for_every_field_and_rule_in_order():
    rules = build_validation_rules([
        {"id": "late", "kind": "required", "fields": ["a", "b"], "order": 20},
        {"id": "early", "kind": "email", "field": "a", "order": 10, "severity": "warning"},
    ])
    results = ValidationEngine().validate(SourceRecord(line=3, fields={"a": "bad", "b": "ok"}), rules)
    assert [(r.rule_id, r.field) for r in results] == [("early", "a"), ("late", "a"), ("late", "b")]
    assert results[0].severity is Severity.WARNING and results[0].is_warning
    assert all(r.line == 3 for r in results)


def test_custom_message_overrides_check_message():
    result = check({"kind": "required", "message": "employee id missing"}, "")
    assert result.message == "employee id missing"


# -------------------------------------------------------
# Configuration errors
# -------------------------------------------------------

@pytest.mark.parametrize("entry", [
    {"kind": "nonsense", "field": "a"},
    {"kind": "pattern", "field": "a", "pattern": "("},
    {"kind": "range", "field": "a"},
    {"kind": "email"},
    {"kind": "business_rule", "rule": "not_registered"},
    {"kind": "transformation", "field": "a"},
    {"kind": "required", "field": "a", "severity": "fatal"},
])
def test_invalid_rules_rejected(entry):
    with pytest.raises(ConfigurationError):
        build_validation_rules([entry])


def test_duplicate_rule_ids_rejected():
    with pytest.raises(ConfigurationError, match="duplicate"):
        build_validation_rules([
            {"id": "r", "kind": "required", "field": "a"},
            {"id": "r", "kind": "required", "field": "b"},
        ])


# -------------------------------------------------------
# Record-level kinds
# -------------------------------------------------------

def test_uniqueness_is_scoped_to_the_context():
    rules = build_validation_rules([{"id": "u", "kind": "uniqueness", "fields": ["id"]}])
    engine = ValidationEngine()
    assert engine.validate({"id": "1"}, rules)[0].passed
    assert not engine.validate({"id": "1"}, rules)[0].passed
    assert ValidationEngine().validate({"id": "1"}, rules)[0].passed


def test_uniqueness_under_concurrency_admits_one_winner():
    rules = build_validation_rules([{"id": "u", "kind": "uniqueness", "field": "id"}])
    engine = ValidationEngine()
    passed = []

    def worker():
        passed.append(engine.validate({"id": "same"}, rules)[0].passed)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert passed.count(True) == 1


def test_referential_integrity_loads_key_set_once():
    provider = DictLookupProvider({"DEPT": {"10": "Sales", "20": "Ops"}})
    engine = ValidationEngine(ValidationContext(reference_cache=ReferenceCache(provider)))
    rules = build_validation_rules([{
        "kind": "referential_integrity", "field": "dept",
        "reference_table": "DEPT", "reference_column": "DEPT_ID",
    }])
    outcomes = [engine.validate({"dept": d}, rules)[0].passed for d in ["10", "20", "30", "10"]]
    assert outcomes == [True, True, False, True]
    assert provider.calls == 1
    assert engine.context.reference_cache.hit_ratio == 0.75


def test_referential_integrity_without_provider_fails_record():
    rules = build_validation_rules([{
        "kind": "referential_integrity", "field": "dept",
        "reference_table": "DEPT", "reference_column": "DEPT_ID",
    }])
    assert not ValidationEngine().validate({"dept": "10"}, rules)[0].passed


def test_custom_query_binds_parameters():
    provider = CallableQueryProvider({
        "SELECT 1 FROM accounts WHERE id = :value AND region = :region": lambda b: b["region"] == "EU",
    })
    rules = build_validation_rules([{
        "kind": "custom_query", "field": "acct",
        "query": "SELECT 1 FROM accounts WHERE id = :value AND region = :region",
        "bind_fields": ["region"],
    }])
    engine = ValidationEngine(ValidationContext(query_provider=provider))
    assert engine.validate({"acct": "A1", "region": "EU"}, rules)[0].passed
    assert not engine.validate({"acct": "A2", "region": "US"}, rules)[0].passed
    assert provider.calls[0][1] == {"value": "A1", "field": "acct", "region": "EU"}


def test_custom_query_provider_error_becomes_failure():
    provider = CallableQueryProvider({})
    rules = build_validation_rules([{"kind": "custom_query", "field": "a", "query": "unknown"}])
    result = ValidationEngine(ValidationContext(query_provider=provider)).validate({"a": "1"}, rules)[0]
    assert not result.passed
    assert "query check failed" in result.message


def test_business_rule_from_registry():
    registry = BusinessRuleRegistry()

    @registry.register("hire_before_term")
    def hire_before_term(record, rule):
        if record["hire"] > record["term"]:
            return "hire date after termination"
        return True

    rules = build_validation_rules([{"kind": "business_rule", "rule": "hire_before_term"}], registry)
    engine = ValidationEngine(ValidationContext(registry=registry))
    ok = engine.validate({"hire": "2020-01-01", "term": "2021-01-01"}, rules)
    bad = engine.validate({"hire": "2022-01-01", "term": "2021-01-01"}, rules)
    assert ok[0].passed and ok[0].field == "*"
    assert bad[0].message == "hire date after termination"


def test_builtin_expression_business_rule():
    rules = build_validation_rules([{
        "kind": "business_rule", "rule": "expression", "fields": ["salary"],
        "expression": "num(salary) >= 0",
    }])
    engine = ValidationEngine()
    assert engine.validate({"salary": "10"}, rules)[0].passed
    assert not engine.validate({"salary": "-1"}, rules)[0].passed


def test_transformation_failure_is_an_error_result():
    err = TransformationError("LookupFailure", "DEPT_NAME", "key '9' not found")
    result = ValidationEngine.transformation_failure(err, line=4)
    assert result.kind is RuleKind.TRANSFORMATION
    assert result.is_error and result.line == 4 and result.field == "DEPT_NAME"
