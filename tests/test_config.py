from pathlib import Path

import pytest
import yaml

from loadtools.config import (
    FallbackConfigurationProvider,
    YamlConfigurationProvider,
    build_job_configuration,
    load_job_configuration,
)
from loadtools.errors import ConfigurationError
from loadtools.providers import StaticConfigurationProvider
from loadtools.threshold import ThresholdAction


# -------------------------------------------------------
# Helpers
# -------------------------------------------------------

def job_doc(**extra):
    doc = {
        "job_id": "payroll",
        "description": "nightly payroll feed",
        "source": {"delimiter": ";"},
        "target": {"table": "HR.PAYROLL", "record_format": "fixed"},
        "mappings": [
            {"target": {"name": "EMP_ID", "type": "INTEGER", "length": 6}, "rule": "source", "field": "id"},
            {"target": {"name": "AMOUNT", "type": "DECIMAL", "length": 9, "scale": 2},
             "rule": "expression", "formula": "num(gross) - num(tax)"},
        ],
        "validations": [
            {"id": "id_required", "kind": "required", "field": "id"},
            {"kind": "range", "field": "AMOUNT", "min": 0, "stage": "post", "severity": "warning"},
        ],
        "threshold": {"profile": "default", "action": "alert_only"},
        "loader": {"timeout": 600, "retry": {"max_retries": 2}},
        "paths": {"archive_dir": "done", "temp_dir": "/var/tmp/payroll"},
        "execution": {"workers": 3, "reconciliation_tolerance": 0.01},
    }
    doc.update(extra)
    return doc


def write_yaml(path: Path, doc) -> Path:
    path.write_text(yaml.safe_dump(doc))
    return path


# -------------------------------------------------------
# Building
# -------------------------------------------------------

def test_build_full_configuration(tmp_path):
    cfg = build_job_configuration(job_doc(), base_dir=tmp_path)
    assert cfg.job_id == "payroll"
    assert cfg.source.delimiter == ";"
    assert cfg.target.record_format == "fixed"
    assert [t.name for t in cfg.target_fields] == ["EMP_ID", "AMOUNT"]
    assert [r.rule_id for r in cfg.validation_rules] == ["id_required", "range_1"]
    assert cfg.threshold.max_error_rate == 0.05
    assert cfg.threshold.action is ThresholdAction.ALERT_ONLY
    assert cfg.loader.timeout == 600 and cfg.loader.retry.max_retries == 2
    assert cfg.execution.workers == 3
    assert cfg.paths.archive_dir == tmp_path / "done"
    assert cfg.paths.temp_dir == Path("/var/tmp/payroll")
    assert cfg.paths.error_dir == tmp_path / "errors"


@pytest.mark.parametrize("change,message", [
    ({"job_id": "bad id"}, "job_id"),
    ({"mappings": []}, "mappings"),
    ({"target": {"table": "T", "record_format": "xml"}}, "record_format"),
    ({"execution": {"workers": 0}}, "workers"),
    ({"paths": {"scratch": "x"}}, "paths"),
    ({"validations": [{"kind": "required", "field": "id", "stage": "later"}]}, "stage"),
])
def test_schema_errors(tmp_path, change, message):
    with pytest.raises(ConfigurationError, match=message):
        build_job_configuration(job_doc(**change), base_dir=tmp_path)


def test_semantic_errors(tmp_path):
    with pytest.raises(ConfigurationError, match="columns"):
        build_job_configuration(job_doc(source={"header": False}), base_dir=tmp_path)
    with pytest.raises(ConfigurationError, match="threshold"):
        build_job_configuration(job_doc(threshold={"profile": "nope"}), base_dir=tmp_path)
    with pytest.raises(ConfigurationError, match="timeout"):
        build_job_configuration(job_doc(loader={"timeout": -1}), base_dir=tmp_path)
    with pytest.raises(ConfigurationError, match="length"):
        build_job_configuration(job_doc(mappings=[{"target": "X", "rule": "source", "field": "x"}]),
                                base_dir=tmp_path)


def test_database_url_expands_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("HR_DB", "sqlite:///hr.db")
    cfg = build_job_configuration(job_doc(providers={"database_url": "${HR_DB}"}), base_dir=tmp_path)
    assert cfg.providers["database_url"] == "sqlite:///hr.db"


def test_loader_command_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("SQLLDR_BIN", "/opt/bin/sqlldr")
    assert build_job_configuration(job_doc(), base_dir=tmp_path).loader.command == "/opt/bin/sqlldr"


# -------------------------------------------------------
# Files and providers
# -------------------------------------------------------

def test_load_from_yaml_resolves_paths_next_to_file(tmp_path):
    jobs = tmp_path / "jobs"
    jobs.mkdir()
    cfg = load_job_configuration(write_yaml(jobs / "payroll.yaml", job_doc()))
    assert cfg.paths.input_dir == jobs / "input"


def test_unreadable_yaml(tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("job_id: [unclosed\n")
    with pytest.raises(ConfigurationError, match="parsing"):
        load_job_configuration(bad)
    with pytest.raises(ConfigurationError, match="not found"):
        load_job_configuration(tmp_path / "missing.yaml")


def test_yaml_provider(tmp_path):
    write_yaml(tmp_path / "payroll.yml", job_doc())
    write_yaml(tmp_path / "other.yaml", job_doc())
    provider = YamlConfigurationProvider(tmp_path)
    assert provider.load("payroll").job_id == "payroll"
    with pytest.raises(ConfigurationError, match="declares job_id"):
        provider.load("other")
    with pytest.raises(ConfigurationError, match="no configuration file"):
        provider.load("absent")


def test_fallback_provider(tmp_path):
    static = build_job_configuration(job_doc(), base_dir=tmp_path)
    provider = FallbackConfigurationProvider(
        YamlConfigurationProvider(tmp_path), StaticConfigurationProvider({"payroll": static})
    )
    assert provider.load("payroll") is static
    with pytest.raises(ConfigurationError):
        provider.load("absent")
