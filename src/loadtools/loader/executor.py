from __future__ import annotations

import logging
import shutil
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from loadtools.errors import LoaderFatal, LoaderTimeout
from loadtools.workflow.policy import wait_for_retry

from .classify import classify_exit
from .control import write_control_file
from .parse import parse_log_file
from .process import ProcessOutcome, run_loader
from .settings import LoaderSettings
from .types import ControlSpecification, ExitClass, LoadResult

log = logging.getLogger("loadtools.loader")

Runner = Callable[..., ProcessOutcome]


class BulkLoadExecutor:
    """
    Drives the external bulk loader for one execution.

    FATAL outcomes and timeouts are retried under ``settings.retry``;
    PARTIAL (rows rejected into the bad file) is final and never retried.
    """

    def __init__(
        self,
        settings: LoaderSettings,
        runner: Runner = run_loader,
        sleep: Optional[Callable[[float], bool]] = None,
    ):
        self.settings = settings
        self.runner = runner
        self.sleep = sleep

    # ------------------------------------------------------------------
    def prepare(self, spec: ControlSpecification) -> Path:
        dirs = [self.settings.template_dir] if self.settings.template_dir else []
        path = write_control_file(spec, dirs)
        log.info("Control file written: %s", path)
        return path

    def build_command(self, spec: ControlSpecification) -> List[str]:
        return [
            self.settings.command,
            f"CONTROL={spec.control_file}",
            f"LOG={spec.log_file}",
            f"BAD={spec.bad_file}",
            f"DISCARD={spec.discard_file}",
            f"DATA={spec.data_file}",
            *self.settings.expanded_args(),
        ]

    # ------------------------------------------------------------------
    def execute(
        self,
        spec: ControlSpecification,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> LoadResult:
        timeout = timeout or self.settings.timeout
        if not spec.control_file.exists():
            self.prepare(spec)

        schedule = self.settings.retry.start()
        waiter = self.sleep or (cancel.wait if cancel is not None else None)
        started = time.monotonic()

        while True:
            attempt = schedule.retries_used
            outcome = self._run_once(spec, timeout, cancel, attempt)
            stats = parse_log_file(spec.log_file)
            exit_class = ExitClass.FATAL if outcome.timed_out else classify_exit(
                outcome.returncode, self.settings.exit_codes, stats
            )
            result = LoadResult(
                exit_class=exit_class,
                exit_code=outcome.returncode,
                statistics=stats,
                retry_count=schedule.retries_used,
                timed_out=outcome.timed_out,
                cancelled=outcome.cancelled,
                duration_seconds=time.monotonic() - started,
            )
            detail = {"exit_code": outcome.returncode, "exit_class": exit_class.value,
                      "timed_out": outcome.timed_out, "duration": round(outcome.duration, 3)}

            if outcome.cancelled:
                result.history = schedule.history
                raise LoaderFatal("loader cancelled", result, schedule.history)

            if exit_class is not ExitClass.FATAL:
                schedule.record_success(**detail)
                result.history = schedule.history
                log.info(
                    "Loader finished: %s (read=%d loaded=%d rejected=%d, retries=%d)",
                    exit_class.value, stats.records_read, stats.records_loaded,
                    stats.records_rejected, result.retry_count,
                )
                return result

            delay = schedule.record_failure(**detail, errors=list(stats.errors[:5]))
            result.history = schedule.history
            if delay is None:
                error_cls = LoaderTimeout if outcome.timed_out else LoaderFatal
                reason = "timed out" if outcome.timed_out else f"failed with exit code {outcome.returncode}"
                raise error_cls(
                    f"loader {reason} after {schedule.retries_used} retries", result, schedule.history
                )

            log.warning("Loader attempt %d %s; retrying in %.1fs", attempt + 1,
                        "timed out" if outcome.timed_out else f"exited {outcome.returncode}", delay)
            self._rotate_log(spec, attempt)
            if wait_for_retry(delay, waiter):
                result.cancelled = True
                raise LoaderFatal("loader cancelled during retry backoff", result, schedule.history)

    def _run_once(self, spec: ControlSpecification, timeout: float,
                  cancel: Optional[threading.Event], attempt: int) -> ProcessOutcome:
        cwd = self.settings.working_dir or spec.control_file.parent
        try:
            return self.runner(
                self.build_command(spec),
                cwd=cwd,
                env=self.settings.environment(),
                timeout=timeout,
                stdout_path=spec.control_file.with_suffix(".out"),
                cancel=cancel,
            )
        except OSError as e:
            # the executable cannot be started; retrying will not help
            result = LoadResult(exit_class=ExitClass.FATAL, exit_code=None, retry_count=attempt)
            raise LoaderFatal(f"cannot start loader {self.settings.command!r}: {e}", result) from e

    @staticmethod
    def _rotate_log(spec: ControlSpecification, attempt: int) -> None:
        if spec.log_file.exists():
            spec.log_file.replace(spec.log_file.with_name(f"{spec.log_file.name}.{attempt + 1}"))

    # ------------------------------------------------------------------
    @staticmethod
    def archive(spec: ControlSpecification, archive_dir: Path) -> Dict[str, str]:
        """Move every ``<job>_<correlation>.*`` artifact under ``archive_dir/<correlation>/``."""
        dest = Path(archive_dir) / spec.correlation_id
        dest.mkdir(parents=True, exist_ok=True)
        moved: Dict[str, str] = {}
        for path in sorted(spec.control_file.parent.glob(spec.control_file.stem + ".*")):
            target = dest / path.name
            shutil.move(str(path), str(target))
            moved[path.name] = str(target)
        return moved
