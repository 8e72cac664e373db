from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import jsonschema
import yaml

from loadtools.csvpipe.mapping import build_mapping_rules
from loadtools.csvpipe.types import FieldMappingRule, SourceFormat
from loadtools.errors import ConfigurationError
from loadtools.loader.settings import LoaderSettings
from loadtools.threshold.policy import ThresholdPolicy
from loadtools.validation.registry import BUSINESS_RULES, BusinessRuleRegistry
from loadtools.validation.rules import build_validation_rules
from loadtools.validation.types import ValidationRule

log = logging.getLogger("loadtools.config")

SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "job_config.schema.json"


@dataclass(frozen=True)
class TargetSpec:
    table: str
    record_format: str = "delimited"
    delimiter: str = "|"
    load_method: str = "APPEND"


@dataclass(frozen=True)
class PathSettings:
    input_dir: Path = Path("input")
    archive_dir: Path = Path("archive")
    error_dir: Path = Path("errors")
    temp_dir: Path = Path("tmp")

    @classmethod
    def from_config(cls, cfg: Dict[str, Any] | None, base_dir: Path) -> "PathSettings":
        cfg = cfg or {}

        def resolve(key: str, default: str) -> Path:
            p = Path(os.path.expandvars(str(cfg.get(key, default))))
            return p if p.is_absolute() else base_dir / p

        return cls(
            input_dir=resolve("input_dir", "input"),
            archive_dir=resolve("archive_dir", "archive"),
            error_dir=resolve("error_dir", "errors"),
            temp_dir=resolve("temp_dir", "tmp"),
        )


@dataclass(frozen=True)
class ExecutionSettings:
    workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    partition_size: Optional[int] = None
    reconciliation_tolerance: float = 0.0
    lookup_cache_ttl: float = 300.0
    lookup_cache_size: int = 10000
    reference_cache_ttl: float = 300.0
    progress_every: int = 1000

    @classmethod
    def from_config(cls, cfg: Dict[str, Any] | None) -> "ExecutionSettings":
        cfg = cfg or {}
        return cls(
            workers=int(cfg.get("workers") or os.cpu_count() or 1),
            partition_size=int(cfg["partition_size"]) if cfg.get("partition_size") else None,
            reconciliation_tolerance=float(cfg.get("reconciliation_tolerance", 0.0)),
            lookup_cache_ttl=float(cfg.get("lookup_cache_ttl", 300.0)),
            lookup_cache_size=int(cfg.get("lookup_cache_size", 10000)),
            reference_cache_ttl=float(cfg.get("reference_cache_ttl", 300.0)),
            progress_every=int(cfg.get("progress_every", 1000)),
        )


@dataclass(frozen=True)
class JobConfiguration:
    """Everything one job execution needs; immutable once built."""

    job_id: str
    target: TargetSpec
    mapping_rules: Tuple[FieldMappingRule, ...]
    validation_rules: Tuple[ValidationRule, ...] = ()
    source: SourceFormat = field(default_factory=SourceFormat)
    threshold: ThresholdPolicy = field(default_factory=ThresholdPolicy)
    loader: LoaderSettings = field(default_factory=LoaderSettings)
    paths: PathSettings = field(default_factory=PathSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    providers: Dict[str, Any] = field(default_factory=dict, hash=False)
    description: str = ""

    @property
    def target_fields(self):
        return [r.target for r in self.mapping_rules]


# ---------------------------------------------------------------------
# Building
# ---------------------------------------------------------------------

def _load_schema() -> Dict[str, Any]:
    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        return json.load(f)


def validate_document(doc: Dict[str, Any]) -> None:
    validator = jsonschema.Draft7Validator(_load_schema())
    problems = sorted(validator.iter_errors(doc), key=lambda e: list(e.absolute_path))
    if problems:
        lines = [
            f"{'/'.join(str(p) for p in e.absolute_path) or '<root>'}: {e.message}"
            for e in problems
        ]
        raise ConfigurationError("invalid job configuration:\n  " + "\n  ".join(lines))


def build_job_configuration(
    doc: Dict[str, Any],
    base_dir: Optional[Path] = None,
    registry: BusinessRuleRegistry = BUSINESS_RULES,
) -> JobConfiguration:
    if not isinstance(doc, dict):
        raise ConfigurationError("job configuration must be a mapping")
    validate_document(doc)
    base_dir = Path(base_dir or ".")

    src = doc.get("source") or {}
    source = SourceFormat(
        delimiter=src.get("delimiter", ","),
        quotechar=src.get("quotechar", '"'),
        header=bool(src.get("header", True)),
        columns=tuple(src["columns"]) if src.get("columns") else None,
        encoding=src.get("encoding", "utf-8"),
        skip_rows=int(src.get("skip_rows", 0)),
    )
    if not source.header and not source.columns:
        raise ConfigurationError("source.columns is required when source.header is false")

    tgt = doc["target"]
    target = TargetSpec(
        table=tgt["table"],
        record_format=tgt.get("record_format", "delimited"),
        delimiter=tgt.get("delimiter", "|"),
        load_method=str(tgt.get("load_method", "APPEND")).upper(),
    )

    try:
        threshold = ThresholdPolicy.from_config(doc.get("threshold"))
        loader = LoaderSettings.from_config(doc.get("loader"))
    except (ValueError, TypeError) as e:
        raise ConfigurationError(str(e)) from e

    providers = dict(doc.get("providers") or {})
    if providers.get("database_url"):
        providers["database_url"] = os.path.expandvars(providers["database_url"])

    return JobConfiguration(
        job_id=doc["job_id"],
        description=doc.get("description", ""),
        source=source,
        target=target,
        mapping_rules=build_mapping_rules(doc["mappings"], target.record_format),
        validation_rules=build_validation_rules(doc.get("validations") or [], registry),
        threshold=threshold,
        loader=loader,
        paths=PathSettings.from_config(doc.get("paths"), base_dir),
        execution=ExecutionSettings.from_config(doc.get("execution")),
        providers=providers,
    )


def load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Error parsing YAML file {path}: {e}") from e
    except FileNotFoundError as e:
        raise ConfigurationError(f"YAML file not found: {path}") from e


def load_job_configuration(path: Path) -> JobConfiguration:
    path = Path(path)
    cfg = build_job_configuration(load_yaml(path), base_dir=path.parent)
    log.info("Loaded job configuration %s from %s", cfg.job_id, path)
    return cfg


# ---------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------

class YamlConfigurationProvider:
    """Resolves ``<directory>/<job_id>.yaml`` (or ``.yml``)."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def load(self, job_id: str) -> JobConfiguration:
        for suffix in (".yaml", ".yml"):
            path = self.directory / f"{job_id}{suffix}"
            if path.exists():
                cfg = load_job_configuration(path)
                if cfg.job_id != job_id:
                    raise ConfigurationError(f"{path} declares job_id {cfg.job_id!r}, expected {job_id!r}")
                return cfg
        raise ConfigurationError(f"no configuration file for job {job_id!r} in {self.directory}")


class FallbackConfigurationProvider:
    """Tries ``primary`` first; on ConfigurationError falls back to ``secondary``."""

    def __init__(self, primary: Any, secondary: Any):
        self.primary = primary
        self.secondary = secondary

    def load(self, job_id: str) -> JobConfiguration:
        try:
            return self.primary.load(job_id)
        except ConfigurationError as e:
            log.warning("Primary configuration source failed for %s (%s); using fallback", job_id, e)
            return self.secondary.load(job_id)
