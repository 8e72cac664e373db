# loadtools/workflow/engine.py

from __future__ import annotations

import contextvars
import csv
import logging
import shutil
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from loadtools.config import JobConfiguration
from loadtools.csvpipe.emit import write_data_file, write_rejects
from loadtools.csvpipe.loader import partition_records, read_source_records
from loadtools.csvpipe.types import SourceRecord
from loadtools.errors import ConfigurationError, LoaderError, ReconciliationMismatch, ThresholdBreach
from loadtools.loader.control import build_control_spec
from loadtools.loader.executor import BulkLoadExecutor
from loadtools.loader.process import run_loader
from loadtools.loader.types import ControlSpecification, LoadResult
from loadtools.logs import correlation_scope
from loadtools.providers.sql import sql_providers
from loadtools.schemas.models import AuditEvent, ExecutionSummary, PhaseTiming
from loadtools.threshold import AtomicCounter, Decision, ThresholdManager
from loadtools.transform import LookupCache, TransformationEngine
from loadtools.validation import (
    BUSINESS_RULES,
    BusinessRuleRegistry,
    FieldValidationResult,
    ReferenceCache,
    ValidationContext,
    ValidationEngine,
    rules_for_stage,
)
from loadtools.validation.types import POST, PRE

from .policy import wait_for_retry
from .pool import CancellationToken, merged_results, run_partitions
from .provenance import LoggingAuditSink
from .state import JobStatus, LoadJobExecution, _timestamp

log = logging.getLogger("loadtools.workflow")


@dataclass
class ProcessedRecord:
    record: SourceRecord
    failures: List[FieldValidationResult] = field(default_factory=list)
    row: Optional[Dict[str, Optional[str]]] = None

    @property
    def rejected(self) -> bool:
        return any(f.is_error for f in self.failures)


# ===============================================================
class Orchestrator:
    """
    Runs load jobs end to end:

      initialized -> validating -> transforming -> error_check
                  -> loading -> post_check -> completed | failed | aborted

    Collaborators are injected; anything left as None is built from the
    job's ``providers`` section (SQLAlchemy) or simply not used.
    """

    def __init__(
        self,
        config_provider: Any = None,
        audit_sink: Any = None,
        lookup_provider: Any = None,
        key_provider: Any = None,
        query_provider: Any = None,
        runner: Callable[..., Any] = run_loader,
        sleep: Optional[Callable[[float], bool]] = None,
        registry: BusinessRuleRegistry = BUSINESS_RULES,
    ) -> None:
        self.config_provider = config_provider
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.lookup_provider = lookup_provider
        self.key_provider = key_provider
        self.query_provider = query_provider
        self.runner = runner
        self.sleep = sleep
        self.registry = registry

    # ---------------------------------------------------------------
    def resolve(self, job: Union[str, JobConfiguration]) -> JobConfiguration:
        if isinstance(job, JobConfiguration):
            return job
        if self.config_provider is None:
            raise ConfigurationError(f"no configuration provider to resolve job {job!r}")
        return self.config_provider.load(str(job))

    def providers_for(self, config: JobConfiguration) -> Dict[str, Any]:
        injected = {"lookup": self.lookup_provider, "keys": self.key_provider, "query": self.query_provider}
        url = config.providers.get("database_url")
        if url and any(v is None for v in injected.values()):
            built = sql_providers(url, config.providers.get("lookup_tables"))
            return {k: v if v is not None else built.get(k) for k, v in injected.items()}
        return injected

    def run(
        self,
        job: Union[str, JobConfiguration],
        input_file: Union[str, Path],
        cancel: Optional[CancellationToken] = None,
    ) -> LoadJobExecution:
        """
        Execute one job against ``input_file``. ConfigurationError propagates
        (the job never starts); every later failure ends in a terminal
        status on the returned execution.
        """
        config = self.resolve(job)
        execution = LoadJobExecution(job_id=config.job_id)
        with correlation_scope(execution.correlation_id):
            log.info("Starting job %s", config.job_id)
            JobRun(self, config, execution, cancel or CancellationToken()).run(input_file)
        return execution


# ===============================================================
class JobRun:
    """State for one execution: counters, caches, uniqueness sets."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        config: JobConfiguration,
        execution: LoadJobExecution,
        cancel: CancellationToken,
    ) -> None:
        self.config = config
        self.execution = execution
        self.cancel = cancel
        self.audit_sink = orchestrator.audit_sink
        self.runner = orchestrator.runner
        self.sleep = orchestrator.sleep
        self.registry = orchestrator.registry

        providers = orchestrator.providers_for(config)
        ex = config.execution
        self.manager = ThresholdManager(config.threshold)
        self.lookup_cache = LookupCache(ttl_seconds=ex.lookup_cache_ttl, max_entries=ex.lookup_cache_size)
        self.reference_cache = (
            ReferenceCache(providers["keys"], ttl_seconds=ex.reference_cache_ttl)
            if providers["keys"] is not None else None
        )
        self.query_provider = providers["query"]
        self.transformer = TransformationEngine(providers["lookup"], self.lookup_cache)
        self.validator = self._new_validator()

        self.mapping_rules = sorted(config.mapping_rules, key=lambda r: r.target.position)
        self.pre_rules = rules_for_stage(config.validation_rules, PRE)
        self.post_rules = rules_for_stage(config.validation_rules, POST)
        self.results_total = AtomicCounter()
        self.processing_seconds = 0.0
        self.load_result: Optional[LoadResult] = None

    # ---------------------------------------------------------------
    # Audit
    # ---------------------------------------------------------------
    def emit(self, event: str, phase: Optional[str] = None, **payload: Any) -> None:
        record = AuditEvent(
            correlation_id=self.execution.correlation_id,
            job_id=self.execution.job_id,
            event=event,
            phase=phase or self.execution.status.value,
            timestamp=_timestamp(),
            payload=payload,
        )
        try:
            self.audit_sink.emit(record)
        except Exception as e:
            # audit delivery never decides the job outcome
            log.warning("Audit sink rejected %s event: %s", event, e)

    def enter(self, status: JobStatus, reason: Optional[str] = None) -> None:
        previous = self.execution.status
        self.execution.transition(status, reason)
        log.info("Phase %s -> %s%s", previous.value, status.value, f" ({reason})" if reason else "")
        self.emit("phase", phase=status.value, previous=previous.value, reason=reason)

    def stop(self, reason: str, status: JobStatus = JobStatus.FAILED,
             error: Optional[Exception] = None) -> None:
        log.error("Job %s %s in %s: %s", self.execution.job_id, status.value,
                  self.execution.status.value, reason)
        self.execution.fail(reason, status, error)
        self.emit("phase", phase=status.value, previous=self.execution.failure_phase, reason=reason)

    # ---------------------------------------------------------------
    # Entry point
    # ---------------------------------------------------------------
    def run(self, input_file: Union[str, Path]) -> None:
        try:
            self._run(input_file)
        except Exception as e:
            log.exception("Unexpected failure in job %s", self.execution.job_id)
            if not self.execution.is_finished:
                self.stop(f"{type(e).__name__}: {e}", error=e)
        finally:
            self._finish()

    def _run(self, input_file: Union[str, Path]) -> None:
        ex = self.execution
        path = self._input_path(input_file)
        ex.input_file = str(path)
        try:
            records = read_source_records(path, self.config.source)
        except (OSError, UnicodeDecodeError, csv.Error, ConfigurationError) as e:
            self.stop(f"cannot read input {path}: {e}", error=e)
            return

        ex.records_read = len(records)
        self.manager.reset()
        self.manager.expect(len(records))
        log.info("Read %d records from %s", len(records), path)

        if self.cancel.is_set():
            self.stop("cancelled before processing", JobStatus.ABORTED)
            return

        # Validating / Transforming
        self.enter(JobStatus.VALIDATING)
        processed = self._attempt(records, first=True)
        if processed is None:
            self.stop("cancelled during processing", JobStatus.ABORTED)
            return

        # ErrorCheck
        self.enter(JobStatus.ERROR_CHECK)
        while self.manager.decision is Decision.RETRY_SCHEDULED:
            delay = self.manager.begin_retry()
            log.warning("Threshold retry scheduled; reprocessing batch in %.1fs", delay)
            self.emit("threshold_retry", delay=delay, **self._counts())
            if wait_for_retry(delay, self.sleep or self.cancel.wait):
                self.stop("cancelled during threshold retry backoff", JobStatus.ABORTED)
                return
            self.lookup_cache.clear()
            processed = self._attempt(records, first=False)
            if processed is None:
                self.stop("cancelled during processing", JobStatus.ABORTED)
                return

        decision = self.manager.decision
        ex.threshold = self.manager.statistics()
        self.emit("threshold_decision", decision=decision.value, breach=ex.threshold.get("breach"),
                  **self._counts())
        if decision is Decision.STOP:
            breach = ThresholdBreach(ex.threshold["breach"]["reason"], ex.threshold)
            self.stop(f"threshold breach: {breach.reason}", JobStatus.ABORTED, breach)
            return
        if decision is Decision.ALERT:
            self.emit("threshold_alert", reason=ex.threshold["breach"]["reason"], **self._counts())

        valid = [p for p in processed if not p.rejected]
        rejected = [p for p in processed if p.rejected]
        ex.records_valid = len(valid)
        ex.records_rejected = len(rejected)
        if rejected:
            self._write_rejects(rejected)

        # Loading
        if self.cancel.is_set():
            self.stop("cancelled before loading", JobStatus.ABORTED)
            return
        self.enter(JobStatus.LOADING)
        if not self._load(valid):
            return

        # PostCheck
        self.enter(JobStatus.POST_CHECK)
        try:
            self._reconcile()
        except ReconciliationMismatch as e:
            self.stop(f"reconciliation failed: {e}", error=e)
            return

        self.enter(JobStatus.COMPLETED)
        self._archive_input(path)

    # ---------------------------------------------------------------
    # Validation and transformation
    # ---------------------------------------------------------------
    def _new_validator(self) -> ValidationEngine:
        return ValidationEngine(ValidationContext(self.reference_cache, self.query_provider, self.registry))

    def _halted(self) -> bool:
        return self.cancel.is_set() or self.manager.halted

    def _attempt(self, records: Sequence[SourceRecord], first: bool) -> Optional[List[ProcessedRecord]]:
        """
        Validate then transform the whole batch. On the first attempt the
        phase transitions are recorded; retries run inside error_check.
        Returns None when cancelled.
        """
        if not first:
            # uniqueness is scoped to one pass over the batch
            self.validator = self._new_validator()

        started = time.monotonic()
        checked = self._run_phase(list(records), self._check_source)
        if self.cancel.is_set():
            return None

        if first:
            self.enter(JobStatus.TRANSFORMING, "threshold halted; nothing to transform" if self.manager.halted else None)
        if self.manager.halted:
            self.processing_seconds += time.monotonic() - started
            return checked

        converted = self._run_phase(checked, self._convert)
        self.processing_seconds += time.monotonic() - started
        if self.cancel.is_set():
            return None
        return converted

    def _run_phase(self, items: List[Any], work: Callable[[Any], Any]) -> List[Any]:
        ex = self.config.execution
        partitions = partition_records(items, ex.workers, ex.partition_size)
        outcomes = run_partitions(partitions, work, ex.workers, self._halted)
        return merged_results(outcomes)

    def _count(self, failures: Sequence[FieldValidationResult]) -> None:
        for f in failures:
            self.manager.record_outcome(f.severity)

    def _check_source(self, record: SourceRecord) -> ProcessedRecord:
        results = self.validator.validate(record, self.pre_rules)
        self.results_total.increment(len(results))
        self.manager.record_processed()
        failures = [r for r in results if not r.passed]
        self._count(failures)

        every = self.config.execution.progress_every
        seen = self.manager.counters.records.value
        if every and seen % every == 0:
            log.info("Validated %d/%d records (%d errors)", seen, self.manager.expected_records,
                     self.manager.counters.errors.value)
        return ProcessedRecord(record=record, failures=failures)

    def _convert(self, item: ProcessedRecord) -> ProcessedRecord:
        row, errors = self.transformer.transform_record(self.mapping_rules, item.record, self.lookup_cache)
        failures = [ValidationEngine.transformation_failure(e, item.record.line) for e in errors]
        if self.post_rules:
            results = self.validator.validate(row, self.post_rules, line=item.record.line)
            self.results_total.increment(len(results))
            failures.extend(r for r in results if not r.passed)
        self._count(failures)
        return ProcessedRecord(record=item.record, failures=item.failures + failures, row=row)

    # ---------------------------------------------------------------
    # Files
    # ---------------------------------------------------------------
    def _input_path(self, input_file: Union[str, Path]) -> Path:
        path = Path(input_file)
        if not path.is_absolute() and not path.exists():
            candidate = self.config.paths.input_dir / path
            if candidate.exists():
                return candidate
        return path

    def _base_name(self) -> str:
        return f"{self.config.job_id}_{self.execution.correlation_id}"

    def _write_rejects(self, rejected: Sequence[ProcessedRecord]) -> None:
        path = self.config.paths.error_dir / f"{self._base_name()}.rejects.csv"
        write_rejects(path, [
            {"line": p.record.line, "record": p.record.fields, "failures": p.failures}
            for p in rejected
        ])
        self.execution.artifacts["rejects"] = str(path)
        log.warning("%d records rejected; details in %s", len(rejected), path)

    def _archive_input(self, path: Path) -> None:
        dest = self.config.paths.archive_dir / self.execution.correlation_id
        dest.mkdir(parents=True, exist_ok=True)
        target = dest / path.name
        shutil.move(str(path), str(target))
        self.execution.artifacts["input"] = str(target)

    # ---------------------------------------------------------------
    # Loading
    # ---------------------------------------------------------------
    def _load(self, valid: Sequence[ProcessedRecord]) -> bool:
        cfg = self.config
        data_file = cfg.paths.temp_dir / f"{self._base_name()}.dat"
        write_data_file(
            data_file,
            [p.row for p in valid],
            [r.target for r in self.mapping_rules],
            cfg.target.record_format,
            cfg.target.delimiter,
        )

        executor = BulkLoadExecutor(cfg.loader, runner=self.runner, sleep=self.sleep)
        try:
            spec = build_control_spec(cfg, data_file, self.execution.correlation_id, cfg.paths.temp_dir)
            executor.prepare(spec)
        except ConfigurationError as e:
            self.stop(f"cannot render control file: {e}", error=e)
            return False
        self.execution.control_file = str(spec.control_file)

        try:
            result = self._supervise(executor, spec)
        except LoaderError as e:
            self._record_load(e.result, e.history)
            self._archive_artifacts(executor, spec)
            if self.cancel.is_set():
                self.stop(f"loader cancelled: {e}", JobStatus.ABORTED, e)
            else:
                self.stop(f"{type(e).__name__}: {e}", error=e)
            return False

        self._record_load(result, result.history)
        self._archive_artifacts(executor, spec)
        return True

    def _supervise(self, executor: BulkLoadExecutor, spec: ControlSpecification) -> LoadResult:
        """Run the loader on a dedicated thread and wait for it."""
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="loader") as pool:
            future = pool.submit(contextvars.copy_context().run, executor.execute, spec, None, self.cancel)
            return future.result()

    def _record_load(self, result: Optional[LoadResult], history: List[Dict[str, Any]]) -> None:
        ex = self.execution
        self.load_result = result
        if result is None:
            ex.load_result = {"history": history}
            return
        ex.exit_class = result.exit_class.value
        ex.records_loaded = result.statistics.records_loaded
        ex.load_result = result.to_dict()
        self.emit("loader_outcome", exit_class=result.exit_class.value, exit_code=result.exit_code,
                  records_loaded=result.statistics.records_loaded,
                  records_rejected=result.statistics.records_rejected,
                  retry_count=result.retry_count, timed_out=result.timed_out)

    def _archive_artifacts(self, executor: BulkLoadExecutor, spec: ControlSpecification) -> None:
        moved = executor.archive(spec, self.config.paths.archive_dir)
        self.execution.artifacts.update(moved)
        if self.load_result is not None:
            self.load_result.artifacts = moved
            self.execution.load_result["artifacts"] = moved

    # ---------------------------------------------------------------
    # PostCheck
    # ---------------------------------------------------------------
    def _reconcile(self) -> None:
        expected = self.execution.records_valid
        stats = self.load_result.statistics
        accounted = (stats.records_loaded + stats.records_rejected
                     + stats.records_discarded + stats.records_skipped)
        tolerance = self.config.execution.reconciliation_tolerance
        if abs(expected - accounted) > tolerance * expected:
            raise ReconciliationMismatch(expected, accounted, tolerance)
        log.info("Reconciled %d records (loaded=%d rejected=%d)", expected,
                 stats.records_loaded, stats.records_rejected)

    # ---------------------------------------------------------------
    # Summary
    # ---------------------------------------------------------------
    def _counts(self) -> Dict[str, int]:
        return self.manager.counters.snapshot()

    def _metrics(self) -> Dict[str, Any]:
        seen = self.manager.counters.records.value
        metrics: Dict[str, Any] = {
            "workers": self.config.execution.workers,
            "lookup_cache": self.lookup_cache.stats(),
            "lookup_cache_hit_ratio": self.lookup_cache.hit_ratio,
            "reference_cache_hit_ratio": self.reference_cache.hit_ratio if self.reference_cache else None,
            "validation_results": self.results_total.value,
            "processing_seconds": round(self.processing_seconds, 3),
            "records_per_second": round(seen / self.processing_seconds, 1) if self.processing_seconds else None,
            "threshold_attempts": len(self.manager.statistics()["attempts"]) + 1,
            "loader_retries": self.load_result.retry_count if self.load_result else 0,
        }
        metrics.update(self.validator.context.stats())
        return metrics

    def _finish(self) -> None:
        ex = self.execution
        if not ex.threshold:
            ex.threshold = self.manager.statistics()
        ex.metrics = self._metrics()
        summary = ExecutionSummary(
            correlation_id=ex.correlation_id,
            job_id=ex.job_id,
            status=ex.status.value,
            completed_with_rejects=ex.completed_with_rejects,
            input_file=ex.input_file,
            started=ex.started,
            finished=ex.finished,
            records_read=ex.records_read,
            records_valid=ex.records_valid,
            records_rejected=ex.records_rejected,
            errors=ex.threshold.get("errors", 0),
            warnings=ex.threshold.get("warnings", 0),
            threshold_decision=ex.threshold.get("decision"),
            exit_class=ex.exit_class,
            loader=ex.load_result,
            metrics=ex.metrics,
            phases=[PhaseTiming(**p) for p in ex.phase_timings],
            failure=ex.failure,
            failure_type=type(ex.error).__name__ if ex.error is not None else None,
            artifacts=ex.artifacts,
        )
        self.emit("summary", phase=ex.status.value, **summary.model_dump(mode="json"))
        log.info("Job %s finished: %s (read=%d valid=%d rejected=%d loaded=%d)", ex.job_id,
                 "completed with rejects" if ex.completed_with_rejects else ex.status.value,
                 ex.records_read, ex.records_valid, ex.records_rejected, ex.records_loaded)
