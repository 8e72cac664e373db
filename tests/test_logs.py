import logging
import threading

from loadtools.logs import CorrelationFilter, configure_logging, correlation_scope, current_correlation_id
from loadtools.workflow import run_partitions


def test_correlation_scope_is_restored():
    assert current_correlation_id() == "-"
    with correlation_scope("abc"):
        assert current_correlation_id() == "abc"
    assert current_correlation_id() == "-"


def test_filter_stamps_records():
    record = logging.LogRecord("loadtools", logging.INFO, __file__, 1, "msg", None, None)
    with correlation_scope("c42"):
        CorrelationFilter().filter(record)
    assert record.correlation_id == "c42"


def test_correlation_follows_partition_workers():
    with correlation_scope("job-1"):
        outcomes = run_partitions([[1], [2]], lambda _: (threading.current_thread().name,
                                                          current_correlation_id()), workers=2)
    seen = [r for o in outcomes for r in o.results]
    assert {cid for _, cid in seen} == {"job-1"}
    assert all(name.startswith("partition") for name, _ in seen)


def test_configure_logging_from_file(tmp_path, monkeypatch):
    monkeypatch.delenv("LOADTOOLS_LOG_LEVEL", raising=False)
    cfg = tmp_path / "logging.yaml"
    cfg.write_text(
        "version: 1\n"
        "disable_existing_loggers: false\n"
        "handlers:\n"
        "  quiet: {class: logging.NullHandler}\n"
        "loggers:\n"
        "  loadtools: {level: ${LOADTOOLS_LOG_LEVEL}, handlers: [quiet], propagate: false}\n"
    )
    logger = configure_logging("debug", cfg)
    assert logger.name == "loadtools"
    assert logger.level == logging.DEBUG
