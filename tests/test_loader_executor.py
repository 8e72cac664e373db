import sys
import threading
from pathlib import Path

import pytest

from loadtools.errors import LoaderFatal, LoaderTimeout
from loadtools.loader import BulkLoadExecutor, ControlField, ControlSpecification, ExitClass, LoaderSettings
from loadtools.loader.process import ProcessOutcome, run_loader
from loadtools.workflow.policy import RetryPolicy


# -------------------------------------------------------
# Helpers
# -------------------------------------------------------

def make_spec(tmp_path: Path) -> ControlSpecification:
    base = tmp_path / "tmp" / "job_c1"
    return ControlSpecification(
        job_id="job",
        correlation_id="c1",
        target_table="T",
        fields=(ControlField(name="A", position=1), ControlField(name="B", position=2)),
        data_file=base.with_suffix(".dat"),
        bad_file=base.with_suffix(".bad"),
        discard_file=base.with_suffix(".dsc"),
        log_file=base.with_suffix(".log"),
        control_file=base.with_suffix(".ctl"),
    )


class FakeRunner:
    """Plays back a list of (returncode, log text, flags) attempts."""

    def __init__(self, spec, attempts):
        self.spec = spec
        self.attempts = list(attempts)
        self.commands = []

    def __call__(self, command, cwd, env, timeout, stdout_path, cancel=None):
        self.commands.append(command)
        code, log_text, flags = self.attempts.pop(0)
        if isinstance(code, BaseException):
            raise code
        if log_text is not None:
            self.spec.log_file.write_text(log_text)
        return ProcessOutcome(returncode=code, **flags)


def ok_log(n):
    return f"  {n} Rows successfully loaded.\nTotal logical records read: {n}\n"


def executor(runner, max_retries=3):
    settings = LoaderSettings(retry=RetryPolicy(max_retries=max_retries, base_delay=1.0, max_delay=8.0))
    return BulkLoadExecutor(settings, runner=runner, sleep=lambda delay: False)


# -------------------------------------------------------
# Retry behaviour
# -------------------------------------------------------

def test_success_after_three_failures(tmp_path):
    spec = make_spec(tmp_path)
    runner = FakeRunner(spec, [(1, "ORA-01017: invalid username\n", {})] * 3 + [(0, ok_log(5), {})])
    result = executor(runner).execute(spec)
    assert result.exit_class is ExitClass.SUCCESS
    assert result.retry_count == 3
    assert result.statistics.records_loaded == 5
    assert [h["outcome"] for h in result.history] == ["failure"] * 3 + ["success"]
    assert [h.get("next_delay") for h in result.history[:3]] == [1.0, 2.0, 4.0]
    # earlier attempts' logs are kept next to the final one
    assert sorted(p.name for p in spec.log_file.parent.glob("job_c1.log*")) == [
        "job_c1.log", "job_c1.log.1", "job_c1.log.2", "job_c1.log.3",
    ]


def test_fatal_after_retries_exhausted(tmp_path):
    spec = make_spec(tmp_path)
    runner = FakeRunner(spec, [(1, None, {})] * 4)
    with pytest.raises(LoaderFatal) as excinfo:
        executor(runner).execute(spec)
    assert excinfo.value.retry_count == 3
    assert len(runner.commands) == 4
    assert len(excinfo.value.history) == 4


def test_timeout_raises_loader_timeout(tmp_path):
    spec = make_spec(tmp_path)
    runner = FakeRunner(spec, [(None, None, {"timed_out": True})] * 2)
    with pytest.raises(LoaderTimeout) as excinfo:
        executor(runner, max_retries=1).execute(spec, timeout=5)
    assert excinfo.value.result.timed_out
    assert excinfo.value.result.exit_class is ExitClass.FATAL


def test_partial_success_is_not_retried(tmp_path):
    spec = make_spec(tmp_path)
    log_text = ok_log(8) + "Total logical records rejected: 2\n"
    runner = FakeRunner(spec, [(2, log_text, {})])
    result = executor(runner).execute(spec)
    assert result.exit_class is ExitClass.PARTIAL
    assert result.succeeded
    assert result.statistics.records_rejected == 2
    assert len(runner.commands) == 1


def test_unstartable_loader_is_fatal_without_retry(tmp_path):
    spec = make_spec(tmp_path)
    runner = FakeRunner(spec, [(FileNotFoundError("sqlldr"), None, {})])
    with pytest.raises(LoaderFatal, match="cannot start loader"):
        executor(runner).execute(spec)
    assert len(runner.commands) == 1


def test_cancelled_run_is_not_retried(tmp_path):
    spec = make_spec(tmp_path)
    runner = FakeRunner(spec, [(-15, None, {"cancelled": True})])
    with pytest.raises(LoaderFatal, match="cancelled") as excinfo:
        executor(runner).execute(spec)
    assert excinfo.value.result.cancelled


def test_cancel_during_backoff(tmp_path):
    spec = make_spec(tmp_path)
    runner = FakeRunner(spec, [(1, None, {})] * 2)
    settings = LoaderSettings(retry=RetryPolicy(max_retries=3, base_delay=30.0))
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(LoaderFatal, match="backoff"):
        BulkLoadExecutor(settings, runner=runner).execute(spec, cancel=cancel)
    assert len(runner.commands) == 1


def test_command_line_and_control_file(tmp_path, monkeypatch):
    monkeypatch.setenv("LOAD_USER", "scott")
    spec = make_spec(tmp_path)
    runner = FakeRunner(spec, [(0, ok_log(1), {})])
    settings = LoaderSettings(command="/opt/oracle/sqlldr", args=("userid=${LOAD_USER}",))
    BulkLoadExecutor(settings, runner=runner).execute(spec)
    command = runner.commands[0]
    assert command[0] == "/opt/oracle/sqlldr"
    assert f"CONTROL={spec.control_file}" in command
    assert command[-1] == "userid=scott"
    assert spec.control_file.read_text().startswith("--")


def test_archive_moves_artifacts(tmp_path):
    spec = make_spec(tmp_path)
    runner = FakeRunner(spec, [(0, ok_log(2), {})])
    executor(runner).execute(spec)
    moved = BulkLoadExecutor.archive(spec, tmp_path / "archive")
    assert set(moved) == {"job_c1.ctl", "job_c1.log"}
    assert (tmp_path / "archive" / "c1" / "job_c1.ctl").exists()
    assert not spec.control_file.exists()


def test_settings_from_config(monkeypatch):
    monkeypatch.setenv("SQLLDR_BIN", "/usr/local/bin/fake-loader")
    settings = LoaderSettings.from_config({"timeout": 10, "retry": {"attempts": 1},
                                           "exit_codes": {4: "partial"}, "env": {"NLS_LANG": "AL32UTF8"}})
    assert settings.command == "/usr/local/bin/fake-loader"
    assert settings.retry.max_retries == 1
    assert settings.exit_codes[4] is ExitClass.PARTIAL
    env = settings.environment()
    assert env["NLS_LANG"] == "AL32UTF8" and env["TZ"] == "UTC"
    with pytest.raises(ValueError):
        LoaderSettings.from_config({"timeout": 0})


# -------------------------------------------------------
# Subprocess supervision
# -------------------------------------------------------

def test_run_loader_captures_output(tmp_path):
    out = tmp_path / "loader.out"
    outcome = run_loader([sys.executable, "-c", "print('loaded')"], cwd=tmp_path, env={},
                         timeout=30, stdout_path=out, poll_interval=0.05)
    assert outcome.returncode == 0 and not outcome.timed_out
    assert out.read_text().strip() == "loaded"


def test_run_loader_terminates_on_timeout(tmp_path):
    outcome = run_loader([sys.executable, "-c", "import time; time.sleep(30)"], cwd=tmp_path, env={},
                         timeout=0.3, stdout_path=tmp_path / "loader.out", poll_interval=0.05, grace=2.0)
    assert outcome.timed_out
    assert outcome.duration < 10


def test_run_loader_honours_cancel(tmp_path):
    cancel = threading.Event()
    cancel.set()
    outcome = run_loader([sys.executable, "-c", "import time; time.sleep(30)"], cwd=tmp_path, env={},
                         timeout=30, stdout_path=tmp_path / "loader.out", cancel=cancel,
                         poll_interval=0.05, grace=2.0)
    assert outcome.cancelled and not outcome.timed_out
