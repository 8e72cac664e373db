from __future__ import annotations

import csv as _csv
import io
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .mapping import pad_fixed
from .types import TargetField


def render_data_line(
    row: Dict[str, Optional[str]],
    targets: Sequence[TargetField],
    record_format: str,
    delimiter: str = "|",
) -> str:
    ordered = sorted(targets, key=lambda t: t.position)
    if record_format == "fixed":
        return "".join(pad_fixed(t, row.get(t.name) or "") for t in ordered)
    buf = io.StringIO()
    _csv.writer(buf, delimiter=delimiter, quotechar='"', lineterminator="").writerow(
        [row.get(t.name) or "" for t in ordered]
    )
    return buf.getvalue()


def write_data_file(
    path: Path,
    rows: Sequence[Dict[str, Optional[str]]],
    targets: Sequence[TargetField],
    record_format: str = "delimited",
    delimiter: str = "|",
    dry_run: bool = False,
) -> None | List[str]:
    """Write transformed records in loader input format, one per line."""
    lines = [render_data_line(r, targets, record_format, delimiter) for r in rows]
    if dry_run:
        return lines
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as f:
        for line in lines:
            f.write(line + "\n")
    return None


REJECT_COLUMNS = ["line", "field", "kind", "severity", "message", "value", "record"]


def write_rejects(path: Path, rejects: Sequence[Dict[str, Any]]) -> Path:
    """
    Rejected records, one row per failed check:
      line, field, kind, severity, message, value, record (JSON)
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = _csv.DictWriter(f, fieldnames=REJECT_COLUMNS)
        writer.writeheader()
        for rej in rejects:
            for failure in rej["failures"]:
                writer.writerow({
                    "line": rej["line"],
                    "field": failure.field,
                    "kind": failure.kind.value,
                    "severity": failure.severity.value,
                    "message": failure.message,
                    "value": "" if failure.value is None else failure.value,
                    "record": json.dumps(rej["record"], sort_keys=True),
                })
    return path
