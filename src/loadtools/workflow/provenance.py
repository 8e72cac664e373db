from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Union

from loadtools.schemas.models import AuditEvent

log = logging.getLogger("loadtools.audit")

AUDIT_FILENAME = "audit.jsonl"


def _record(event: Union[AuditEvent, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(event, AuditEvent):
        return event.model_dump(mode="json")
    return dict(event)


def _append_jsonl_atomic(path: Path, record: Dict[str, Any]) -> None:
    line = json.dumps(record, separators=(",", ":"), default=str)
    path.parent.mkdir(parents=True, exist_ok=True)

    # A new file appears whole via rename; later lines are plain appends.
    if not path.exists():
        tmp = path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            f.write(line + "\n")
        tmp.replace(path)
        return

    with path.open("a", encoding="utf-8") as f:
        f.write(line + "\n")


# ---------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------

class JsonlAuditSink:
    """
    Appends one JSON object per event to ``path``:
      {"schema_version": "0.1.0", "correlation_id": "...", "job_id": "...",
       "event": "phase", "phase": "loading", "timestamp": "...", "payload": {...}}
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        if self.path.is_dir() or not self.path.suffix:
            self.path = self.path / AUDIT_FILENAME
        self._lock = threading.Lock()

    def emit(self, event: Union[AuditEvent, Dict[str, Any]]) -> None:
        with self._lock:
            _append_jsonl_atomic(self.path, _record(event))


class MemoryAuditSink:
    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def emit(self, event: Union[AuditEvent, Dict[str, Any]]) -> None:
        self.events.append(_record(event))

    def named(self, name: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["event"] == name]


class LoggingAuditSink:
    """Writes events to the ``loadtools.audit`` logger; the default sink."""

    def emit(self, event: Union[AuditEvent, Dict[str, Any]]) -> None:
        rec = _record(event)
        log.info("%s %s %s", rec.get("event"), rec.get("phase") or "-",
                 json.dumps(rec.get("payload", {}), sort_keys=True, default=str))


# ---------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------

def read_audit_log(path: Path) -> List[Dict[str, Any]]:
    path = Path(path)
    if path.is_dir():
        path = path / AUDIT_FILENAME
    if not path.exists():
        return []

    out = []
    with path.open(encoding="utf-8") as f:
        for n, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                out.append(json.loads(line))
            except json.JSONDecodeError:
                log.warning("Skipping malformed audit line %d in %s", n, path)
    return out
