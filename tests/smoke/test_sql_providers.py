from pathlib import Path

import pytest
from sqlalchemy import create_engine, text

from loadtools.config import build_job_configuration
from loadtools.loader.process import ProcessOutcome
from loadtools.providers import NOT_FOUND
from loadtools.providers.sql import (
    SqlKeySetProvider,
    SqlLookupProvider,
    SqlQueryProvider,
    checked_identifier,
    sql_providers,
)
from loadtools.workflow import JobStatus
from loadtools.workflow.engine import Orchestrator
from loadtools.workflow.provenance import MemoryAuditSink


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    url = f"sqlite:///{tmp_path / 'reference.db'}"
    engine = create_engine(url)
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE departments (code TEXT PRIMARY KEY, name TEXT)"))
        conn.execute(text("INSERT INTO departments VALUES ('10', 'Sales'), ('20', 'Operations')"))
        conn.execute(text("CREATE TABLE accounts (id TEXT, region TEXT)"))
        conn.execute(text("INSERT INTO accounts VALUES ('A1', 'EU')"))
    engine.dispose()
    return url


def test_lookup_provider(db_url):
    provider = SqlLookupProvider(db_url, {"DEPT": {"table": "departments", "key_column": "code",
                                                   "value_column": "name"}})
    assert provider.query("DEPT", "20") == "Operations"
    assert provider.query("DEPT", "99") is NOT_FOUND
    with pytest.raises(KeyError):
        provider.query("UNKNOWN", "10")


def test_key_set_provider(db_url):
    assert sorted(SqlKeySetProvider(db_url).load_keys("departments", "code")) == ["10", "20"]


def test_query_provider_binds_values(db_url):
    provider = SqlQueryProvider(db_url)
    sql = "SELECT COUNT(*) FROM accounts WHERE id = :value AND region = :region"
    assert provider.evaluate(sql, {"value": "A1", "region": "EU", "field": "acct"})
    assert not provider.evaluate(sql, {"value": "A1' OR '1'='1", "region": "EU"})
    with pytest.raises(KeyError):
        provider.evaluate(sql, {"value": "A1"})


@pytest.mark.parametrize("name", ["dept; DROP TABLE x", "1abc", "", "a-b"])
def test_identifiers_are_checked(name):
    with pytest.raises(ValueError):
        checked_identifier(name)


def test_no_url_builds_nothing():
    assert sql_providers(None) == {}


def test_job_uses_database_providers(tmp_path, db_url):
    config = build_job_configuration({
        "job_id": "staff",
        "target": {"table": "STAFF"},
        "mappings": [
            {"target": "NAME", "rule": "source", "field": "name"},
            {"target": "DEPT_NAME", "rule": "lookup", "field": "dept", "table": "DEPT"},
        ],
        "validations": [{"kind": "referential_integrity", "field": "dept",
                         "reference_table": "departments", "reference_column": "code"}],
        "loader": {"retry": {"max_retries": 0}},
        "execution": {"workers": 2},
        "providers": {
            "database_url": db_url,
            "lookup_tables": {"DEPT": {"table": "departments", "key_column": "code", "value_column": "name"}},
        },
    }, base_dir=tmp_path)
    source = tmp_path / "staff.csv"
    source.write_text("name,dept\nAnn,10\nBen,20\nCy,30\n")

    loaded = []

    def loader(command, cwd, env, timeout, stdout_path, cancel=None):
        args = dict(c.split("=", 1) for c in command[1:] if "=" in c)
        loaded.extend(Path(args["DATA"]).read_text().splitlines())
        Path(args["LOG"]).write_text(f"{len(loaded)} Rows successfully loaded.\n")
        return ProcessOutcome(returncode=0)

    ex = Orchestrator(audit_sink=MemoryAuditSink(), runner=loader).run(config, source)
    assert ex.status is JobStatus.COMPLETED
    assert loaded == ["Ann|Sales", "Ben|Operations"]
    assert ex.records_rejected == 1
    assert ex.metrics["reference_cache"]["loads"] == 1
