from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from .types import ExitClass, LogStatistics

# SQL*Loader: EX_SUCC=0, EX_FAIL=1, EX_WARN=2 (rows rejected/discarded), EX_FTL=3
DEFAULT_EXIT_CODES: Dict[int, ExitClass] = {
    0: ExitClass.SUCCESS,
    1: ExitClass.FATAL,
    2: ExitClass.PARTIAL,
    3: ExitClass.FATAL,
}

_ALIASES = {
    "success": ExitClass.SUCCESS,
    "ok": ExitClass.SUCCESS,
    "partial": ExitClass.PARTIAL,
    "partial_success_with_rejects": ExitClass.PARTIAL,
    "warning": ExitClass.PARTIAL,
    "fatal": ExitClass.FATAL,
    "failure": ExitClass.FATAL,
}


def build_exit_code_map(cfg: Optional[Mapping[Any, Any]]) -> Dict[int, ExitClass]:
    """
    ``exit_codes: {0: success, 2: partial, 1: fatal}``; entries override the defaults.
    """
    mapping = dict(DEFAULT_EXIT_CODES)
    for code, label in (cfg or {}).items():
        key = str(label).strip().lower()
        if key not in _ALIASES:
            raise ValueError(f"unknown exit classification {label!r} for code {code}")
        mapping[int(code)] = _ALIASES[key]
    return mapping


def classify_exit(
    code: Optional[int],
    mapping: Optional[Mapping[int, ExitClass]] = None,
    stats: Optional[LogStatistics] = None,
) -> ExitClass:
    """
    Exit code → classification; unknown codes and a missing code are FATAL.
    A clean exit whose log still reports rejected rows is PARTIAL.
    """
    if code is None:
        return ExitClass.FATAL
    outcome = (mapping or DEFAULT_EXIT_CODES).get(code, ExitClass.FATAL)
    if outcome is ExitClass.SUCCESS and stats is not None and stats.records_rejected > 0:
        return ExitClass.PARTIAL
    return outcome
