from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


class ExitClass(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial_success_with_rejects"
    FATAL = "fatal"


# target data type → loader field type
LOADER_TYPES: Dict[str, str] = {
    "CHAR": "CHAR",
    "INTEGER": "INTEGER EXTERNAL",
    "DECIMAL": "DECIMAL EXTERNAL",
    "DATE": "DATE",
}


@dataclass(frozen=True)
class ControlField:
    name: str
    position: int
    data_type: str = "CHAR"
    length: Optional[int] = None
    format: Optional[str] = None
    scale: int = 0
    start: int = 0              # fixed-width only
    nullif: Optional[str] = None
    defaultif: Optional[str] = None
    trim: bool = False
    case: Optional[str] = None

    @property
    def end(self) -> int:
        return self.start + (self.length or 0) - 1

    @property
    def loader_type(self) -> str:
        return LOADER_TYPES[self.data_type]


@dataclass(frozen=True)
class LoaderOptions:
    direct_path: bool = True
    parallel_degree: int = 1
    bind_size: Optional[int] = None
    read_size: Optional[int] = None
    rows: Optional[int] = None
    errors: Optional[int] = None     # loader-side reject limit
    skip: int = 0
    characterset: str = "UTF8"

    @classmethod
    def from_config(cls, cfg: Dict[str, Any] | None) -> "LoaderOptions":
        cfg = dict(cfg or {})

        def opt_int(key: str) -> Optional[int]:
            return int(cfg[key]) if cfg.get(key) is not None else None

        return cls(
            direct_path=bool(cfg.get("direct_path", True)),
            parallel_degree=int(cfg.get("parallel_degree", 1)),
            bind_size=opt_int("bind_size"),
            read_size=opt_int("read_size"),
            rows=opt_int("rows"),
            errors=opt_int("errors"),
            skip=int(cfg.get("skip", 0)),
            characterset=str(cfg.get("characterset", "UTF8")),
        )


@dataclass(frozen=True)
class ControlSpecification:
    job_id: str
    correlation_id: str
    target_table: str
    fields: Tuple[ControlField, ...]
    data_file: Path
    bad_file: Path
    discard_file: Path
    log_file: Path
    control_file: Path
    record_format: str = "delimited"     # delimited|fixed
    delimiter: str = "|"
    load_method: str = "APPEND"          # APPEND|INSERT|REPLACE|TRUNCATE
    options: LoaderOptions = field(default_factory=LoaderOptions)
    template: str = "sqlldr.ctl.j2"
    generated_at: str = ""

    def field_map(self) -> Dict[str, Dict[str, Any]]:
        """Field name → position, length, type, format and loader options; the shape re-parsing recovers."""
        return {
            f.name: {
                "position": f.position,
                "length": f.length,
                "data_type": f.data_type,
                "format": f.format,
                "scale": f.scale,
                "start": f.start if self.record_format == "fixed" else 0,
                "nullif": f.nullif,
                "defaultif": f.defaultif,
                "trim": f.trim,
                "case": f.case,
            }
            for f in self.fields
        }


@dataclass(frozen=True)
class LogStatistics:
    records_read: int = 0
    records_loaded: int = 0
    records_rejected: int = 0
    records_discarded: int = 0
    records_skipped: int = 0
    elapsed_seconds: Optional[float] = None
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()


@dataclass
class LoadResult:
    exit_class: ExitClass
    exit_code: Optional[int]
    statistics: LogStatistics = field(default_factory=LogStatistics)
    retry_count: int = 0
    timed_out: bool = False
    cancelled: bool = False
    duration_seconds: float = 0.0
    history: List[Dict[str, Any]] = field(default_factory=list)
    artifacts: Dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.exit_class in (ExitClass.SUCCESS, ExitClass.PARTIAL)

    def to_dict(self) -> Dict[str, Any]:
        s = self.statistics
        return {
            "exit_class": self.exit_class.value,
            "exit_code": self.exit_code,
            "records_read": s.records_read,
            "records_loaded": s.records_loaded,
            "records_rejected": s.records_rejected,
            "records_discarded": s.records_discarded,
            "records_skipped": s.records_skipped,
            "elapsed_seconds": s.elapsed_seconds,
            "loader_errors": list(s.errors),
            "retry_count": self.retry_count,
            "timed_out": self.timed_out,
            "cancelled": self.cancelled,
            "duration_seconds": round(self.duration_seconds, 3),
            "history": self.history,
            "artifacts": self.artifacts,
        }
