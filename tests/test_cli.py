import json
from pathlib import Path

import pandas as pd
import pytest
import yaml
from typer.testing import CliRunner

import loadtools.cli as cli
from loadtools.cli import app
from loadtools.loader.process import ProcessOutcome
from loadtools.workflow.engine import Orchestrator


runner = CliRunner()


# -------------------------------------------------------
# Helpers
# -------------------------------------------------------

def _write_job(tmp_path: Path, **extra) -> Path:
    doc = {
        "job_id": "employees",
        "target": {"table": "EMPLOYEES"},
        "mappings": [
            {"target": {"name": "FULL_NAME", "length": 40}, "rule": "composite",
             "fields": ["first", "last"], "delimiter": " "},
            {"target": {"name": "HIRED", "type": "DATE", "format": "YYYY-MM-DD"},
             "rule": "source", "field": "hired"},
        ],
        "validations": [{"kind": "required", "field": "last"}],
        "loader": {"retry": {"max_retries": 0}},
        "execution": {"workers": 1},
    }
    doc.update(extra)
    path = tmp_path / "employees.yaml"
    path.write_text(yaml.safe_dump(doc))
    return path


def _write_input(tmp_path: Path, *rows) -> Path:
    path = tmp_path / "employees.csv"
    path.write_text("first,last,hired\n" + "".join(r + "\n" for r in rows))
    return path


def _fake_loader(returncode=0):
    def run(command, cwd, env, timeout, stdout_path, cancel=None):
        args = dict(c.split("=", 1) for c in command[1:] if "=" in c)
        n = len(Path(args["DATA"]).read_text().splitlines())
        Path(args["LOG"]).write_text(f"Total logical records read: {n}\n  {n} Rows successfully loaded.\n")
        return ProcessOutcome(returncode=returncode)
    return run


@pytest.fixture
def quiet(monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda *a, **k: None)


def _use_loader(monkeypatch, returncode=0):
    loader = _fake_loader(returncode)
    monkeypatch.setattr(cli, "Orchestrator",
                        lambda audit_sink=None: Orchestrator(audit_sink=audit_sink, runner=loader))


# -------------------------------------------------------
# check-config / render-control / parse-log
# -------------------------------------------------------

def test_check_config_ok(tmp_path):
    result = runner.invoke(app, ["check-config", str(_write_job(tmp_path))])
    assert result.exit_code == 0
    assert "OK employees: 2 mapping rule(s), 1 validation rule(s), target EMPLOYEES" in result.stdout


def test_check_config_reports_errors(tmp_path):
    result = runner.invoke(app, ["check-config", str(_write_job(tmp_path, mappings=[]))])
    assert result.exit_code == 1
    assert "Configuration error" in result.output


def test_render_control_to_stdout(tmp_path):
    result = runner.invoke(app, ["render-control", str(_write_job(tmp_path)), "--data", "/data/e.dat"])
    assert result.exit_code == 0
    assert "INFILE '/data/e.dat'" in result.stdout
    assert 'HIRED DATE "YYYY-MM-DD"' in result.stdout
    assert "APPEND INTO TABLE EMPLOYEES" in result.stdout


def test_render_control_to_file(tmp_path):
    out = tmp_path / "ctl" / "employees.ctl"
    result = runner.invoke(app, ["render-control", str(_write_job(tmp_path)), "--data", "e.dat",
                                 "--out", str(out), "--correlation-id", "c9"])
    assert result.exit_code == 0
    assert out.read_text().count("-- Correlation id: c9") == 1
    assert "Wrote" in result.stdout


def test_render_control_bad_template(tmp_path):
    job = _write_job(tmp_path, loader={"template": "nope.ctl.j2"})
    result = runner.invoke(app, ["render-control", str(job), "--data", "e.dat"])
    assert result.exit_code == 1
    assert "Cannot render" in result.output


def test_parse_log(tmp_path):
    log = tmp_path / "load.log"
    log.write_text("Total logical records read: 5\nTotal logical records rejected: 1\n")
    result = runner.invoke(app, ["parse-log", str(log)])
    assert result.exit_code == 0
    stats = json.loads(result.stdout)
    assert stats["records_read"] == 5 and stats["records_loaded"] == 4


def test_parse_log_missing_file(tmp_path):
    result = runner.invoke(app, ["parse-log", str(tmp_path / "missing.log")])
    assert result.exit_code != 0


# -------------------------------------------------------
# run / report
# -------------------------------------------------------

def test_run_and_report(tmp_path, monkeypatch, quiet):
    _use_loader(monkeypatch)
    audit = tmp_path / "audit.jsonl"
    job = _write_job(tmp_path)

    result = runner.invoke(app, ["run", str(job), str(_write_input(tmp_path, "Jane,Doe,2024-01-02", "Bob,,2024-02-03")),
                                 "--audit", str(audit)])
    assert result.exit_code == 0, result.output
    assert "completed with rejects: read=2 rejected=1 loaded=1" in result.stdout

    out = tmp_path / "report" / "executions.csv"
    result = runner.invoke(app, ["report", str(audit), "--out", str(out)])
    assert result.exit_code == 0
    df = pd.read_csv(out)
    assert len(df) == 1
    row = df.iloc[0]
    assert row["status"] == "completed"
    assert row["records_loaded"] == 1 and row["records_rejected"] == 1


def test_run_loader_failure_exit_code(tmp_path, monkeypatch, quiet):
    _use_loader(monkeypatch, returncode=3)
    result = runner.invoke(app, ["run", str(_write_job(tmp_path)), str(_write_input(tmp_path, "Jane,Doe,2024-01-02"))])
    assert result.exit_code == 1
    assert "loading: LoaderFatal" in result.stdout


def test_run_threshold_abort_exit_code(tmp_path, monkeypatch, quiet):
    _use_loader(monkeypatch)
    job = _write_job(tmp_path, threshold={"max_errors": 1})
    result = runner.invoke(app, ["run", str(job), str(_write_input(tmp_path, "Bob,,2024-02-03"))])
    assert result.exit_code == 2
    assert "aborted" in result.stdout


def test_run_bad_config_exit_code(tmp_path, quiet):
    bad = tmp_path / "bad.yaml"
    bad.write_text("job_id: x\n")
    result = runner.invoke(app, ["run", str(bad), str(tmp_path / "in.csv")])
    assert result.exit_code == 1
