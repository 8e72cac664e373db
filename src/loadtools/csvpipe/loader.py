from __future__ import annotations

import csv as _csv
import math
from itertools import islice
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

from loadtools.errors import ConfigurationError

from .types import SourceFormat, SourceRecord


def iter_source_records(path: Path, fmt: SourceFormat) -> Iterator[SourceRecord]:
    """
    Stream delimited rows as SourceRecords. Short rows leave trailing fields
    absent; extra cells are kept under ``_extra``.
    """
    path = Path(path)
    with path.open(newline="", encoding=fmt.encoding) as f:
        lines = islice(f, fmt.skip_rows, None)
        reader = _csv.reader(lines, delimiter=fmt.delimiter, quotechar=fmt.quotechar)
        line_no = fmt.skip_rows

        if fmt.header:
            header = next(reader, None)
            line_no += 1
            if header is None:
                return
            names = [h.strip() for h in header]
        elif fmt.columns:
            names = list(fmt.columns)
        else:
            raise ConfigurationError("source without header needs 'columns'")

        for row in reader:
            line_no += 1
            if not row or all(not cell.strip() for cell in row):
                continue
            fields = dict(zip(names, row))
            if len(row) > len(names):
                fields["_extra"] = fmt.delimiter.join(row[len(names):])
            yield SourceRecord(line=line_no, fields=fields)


def read_source_records(path: Path, fmt: Optional[SourceFormat] = None) -> List[SourceRecord]:
    return list(iter_source_records(path, fmt or SourceFormat()))


def partition_records(
    records: Sequence[SourceRecord],
    workers: int,
    partition_size: Optional[int] = None,
) -> List[Sequence[SourceRecord]]:
    """Split into contiguous slices; one per worker unless a size is given."""
    if not records:
        return []
    size = partition_size or math.ceil(len(records) / max(workers, 1))
    return [records[i:i + size] for i in range(0, len(records), size)]
