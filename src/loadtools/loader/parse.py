from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional, Union

from .types import LogStatistics

READ_RE = re.compile(r"Total logical records read:\s*(\d+)", re.I)
REJECTED_RE = re.compile(r"Total logical records rejected:\s*(\d+)", re.I)
DISCARDED_RE = re.compile(r"Total logical records discarded:\s*(\d+)", re.I)
SKIPPED_RE = re.compile(r"Total logical records skipped:\s*(\d+)", re.I)
LOADED_RE = re.compile(r"(\d+)\s+Rows?\s+successfully\s+loaded", re.I)
ELAPSED_RE = re.compile(r"Elapsed time was:\s*(\d+):(\d+):(\d+(?:\.\d+)?)", re.I)
ERROR_RE = re.compile(r"((?:ORA-\d{5}|SQL\*Loader-\d+)\b.*)")
WARNING_RE = re.compile(r"(Warning:.*)", re.I)


def _int(rx: re.Pattern, text: str) -> Optional[int]:
    m = rx.search(text)
    return int(m.group(1)) if m else None


def parse_log_text(text: str) -> LogStatistics:
    read = _int(READ_RE, text) or 0
    rejected = _int(REJECTED_RE, text) or 0
    discarded = _int(DISCARDED_RE, text) or 0
    skipped = _int(SKIPPED_RE, text) or 0

    loaded_hits = [int(n) for n in LOADED_RE.findall(text)]
    if loaded_hits:
        loaded = sum(loaded_hits)          # one line per INTO TABLE clause
    else:
        loaded = max(read - rejected - discarded - skipped, 0)

    elapsed = None
    m = ELAPSED_RE.search(text)
    if m:
        h, mnt, s = m.groups()
        elapsed = int(h) * 3600 + int(mnt) * 60 + float(s)

    errors: List[str] = []
    warnings: List[str] = []
    for line in text.splitlines():
        em = ERROR_RE.search(line)
        if em:
            errors.append(em.group(1).strip())
            continue
        wm = WARNING_RE.search(line)
        if wm:
            warnings.append(wm.group(1).strip())

    return LogStatistics(
        records_read=read,
        records_loaded=loaded,
        records_rejected=rejected,
        records_discarded=discarded,
        records_skipped=skipped,
        elapsed_seconds=elapsed,
        errors=tuple(errors),
        warnings=tuple(warnings),
    )


def parse_log_file(path: Union[str, Path]) -> LogStatistics:
    path = Path(path)
    if not path.exists():
        return LogStatistics()
    return parse_log_text(path.read_text(errors="ignore"))
