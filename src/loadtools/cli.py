from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import pandas as _pd
import typer

from loadtools.config import load_job_configuration
from loadtools.errors import ConfigurationError
from loadtools.loader.control import build_control_spec, render_control_file
from loadtools.loader.parse import parse_log_file
from loadtools.logs import configure_logging
from loadtools.workflow.engine import Orchestrator
from loadtools.workflow.provenance import JsonlAuditSink, read_audit_log
from loadtools.workflow.state import JobStatus

app = typer.Typer(help="load-tools CLI")

EXIT_CODES = {
    JobStatus.COMPLETED: 0,
    JobStatus.FAILED: 1,
    JobStatus.ABORTED: 2,
}


def _load_config(path: Path):
    try:
        return load_job_configuration(path)
    except ConfigurationError as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


# dotted-path getter
def _get(d: dict, path: str, default=None):
    cur = d
    for part in path.split("."):
        if cur is None or not isinstance(cur, dict):
            return default
        cur = cur.get(part)
    return cur if cur is not None else default


def _flatten_summary(rec: dict) -> dict:
    p = rec.get("payload", {})
    return {
        "timestamp": rec.get("timestamp"),
        "correlation_id": rec.get("correlation_id"),
        "job_id": rec.get("job_id"),
        "status": p.get("status"),
        "completed_with_rejects": p.get("completed_with_rejects"),
        "started": p.get("started"),
        "finished": p.get("finished"),
        "records_read": p.get("records_read"),
        "records_valid": p.get("records_valid"),
        "records_rejected": p.get("records_rejected"),
        "records_loaded": _get(p, "loader.records_loaded"),
        "loader_rejected": _get(p, "loader.records_rejected"),
        "errors": p.get("errors"),
        "warnings": p.get("warnings"),
        "threshold_decision": p.get("threshold_decision"),
        "exit_class": p.get("exit_class"),
        "loader_retries": _get(p, "loader.retry_count"),
        "records_per_second": _get(p, "metrics.records_per_second"),
        "lookup_cache_hit_ratio": _get(p, "metrics.lookup_cache_hit_ratio"),
        "failure": p.get("failure"),
    }


# -----------------------------
# Commands
# -----------------------------

@app.command()
def run(
    job_config: Path = typer.Argument(..., help="Job configuration YAML"),
    input_file: Path = typer.Argument(..., help="Delimited input file (relative paths also tried under paths.input_dir)"),
    audit: Optional[Path] = typer.Option(None, "--audit", help="Append audit events to this JSONL file"),
    log_level: str = typer.Option("INFO", "--log-level", "-l"),
    log_config: Optional[Path] = typer.Option(None, "--log-config", help="Logging dictConfig YAML"),
):
    """Run one load job; exit 0 completed, 1 failed, 2 aborted."""
    configure_logging(log_level, log_config)
    config = _load_config(job_config)
    sink = JsonlAuditSink(audit) if audit else None
    execution = Orchestrator(audit_sink=sink).run(config, input_file)

    colour = typer.colors.GREEN if execution.status is JobStatus.COMPLETED else typer.colors.RED
    label = "completed with rejects" if execution.completed_with_rejects else execution.status.value
    typer.secho(
        f"{execution.job_id} [{execution.correlation_id}] {label}: "
        f"read={execution.records_read} rejected={execution.records_rejected} "
        f"loaded={execution.records_loaded}",
        fg=colour,
    )
    if execution.failure:
        typer.echo(f"  {execution.failure_phase}: {execution.failure}")
    raise typer.Exit(code=EXIT_CODES.get(execution.status, 1))


@app.command("check-config")
def check_config(job_config: Path = typer.Argument(..., help="Job configuration YAML")):
    """Validate a job configuration without running it."""
    config = _load_config(job_config)
    typer.secho(
        f"OK {config.job_id}: {len(config.mapping_rules)} mapping rule(s), "
        f"{len(config.validation_rules)} validation rule(s), target {config.target.table}",
        fg=typer.colors.GREEN,
    )


@app.command("render-control")
def render_control(
    job_config: Path = typer.Argument(..., help="Job configuration YAML"),
    data: Path = typer.Option(..., "--data", help="Data file the control file points at"),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Write here instead of stdout"),
    correlation_id: str = typer.Option("preview", "--correlation-id"),
):
    """Render the loader control file for a job."""
    config = _load_config(job_config)
    temp_dir = out.parent if out else config.paths.temp_dir
    dirs = [config.loader.template_dir] if config.loader.template_dir else []
    try:
        spec = build_control_spec(config, data, correlation_id, temp_dir)
        text = render_control_file(spec, dirs)
    except ConfigurationError as e:
        typer.secho(f"Cannot render: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    if out is None:
        typer.echo(text)
        return
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(text, encoding="utf-8")
    typer.secho(f"Wrote {out}", fg=typer.colors.GREEN)


@app.command("parse-log")
def parse_log(log_file: Path = typer.Argument(..., help="Bulk loader log file")):
    """Print the statistics parsed from a loader log as JSON."""
    if not log_file.exists():
        raise typer.BadParameter(f"{log_file} not found")
    typer.echo(json.dumps(asdict(parse_log_file(log_file)), indent=2))


@app.command()
def report(
    audit_jsonl: Path = typer.Argument(..., help="Audit JSONL written by `run --audit`"),
    out_csv: Path = typer.Option(Path("executions.csv"), "--out", "-o", help="Output CSV"),
):
    """Flatten execution summaries into a CSV, one row per execution."""
    events = [e for e in read_audit_log(audit_jsonl) if e.get("event") == "summary"]
    df = _pd.DataFrame([_flatten_summary(e) for e in events])
    out_csv.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(out_csv, index=False)
    typer.secho(f"Wrote {out_csv} ({len(df)} rows)", fg=typer.colors.GREEN)


if __name__ == "__main__":
    app()
