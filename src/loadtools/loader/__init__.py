"""
Bulk loader adapter: control specification, subprocess supervision, exit
classification and log parsing.
"""
from .classify import DEFAULT_EXIT_CODES, classify_exit
from .control import build_control_spec, parse_control_file, render_control_file
from .executor import BulkLoadExecutor
from .parse import parse_log_file, parse_log_text
from .settings import LoaderSettings
from .types import ControlField, ControlSpecification, ExitClass, LoaderOptions, LoadResult, LogStatistics
