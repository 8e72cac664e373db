"""Logging setup: dictConfig from YAML plus the correlation id filter."""

from __future__ import annotations

import contextvars
import logging
import logging.config
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

import yaml

DEFAULT_LOGGING_YAML = Path(__file__).resolve().parent / "logging.yaml"

_correlation_id: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="-")


def current_correlation_id() -> str:
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[None]:
    token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(token)


class CorrelationFilter(logging.Filter):
    """Stamps every record with the active correlation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = _correlation_id.get()
        return True


def configure_logging(level: Union[str, int] = "INFO", config_path: Optional[Path] = None) -> logging.Logger:
    """
    Apply a YAML dictConfig. ``${VAR}`` references are expanded from the
    environment; ``LOADTOOLS_LOG_LEVEL`` defaults to ``level``.
    """
    if isinstance(level, int):
        level = logging.getLevelName(level)
    path = Path(config_path) if config_path else DEFAULT_LOGGING_YAML
    with open(path) as f:
        config_str = f.read()
    # $LOADTOOLS_LOG_LEVEL wins over the argument
    config_str = config_str.replace(
        "${LOADTOOLS_LOG_LEVEL}", os.environ.get("LOADTOOLS_LOG_LEVEL", str(level).upper())
    )
    config_str = os.path.expandvars(config_str)
    try:
        log_config = yaml.safe_load(config_str)
    except yaml.YAMLError as e:
        raise ValueError(f"Error parsing logging config {path}: {e}") from e

    logging.config.dictConfig(log_config)
    return logging.getLogger("loadtools")
