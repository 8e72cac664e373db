import csv
import json

from loadtools.csvpipe.emit import render_data_line, write_data_file, write_rejects
from loadtools.csvpipe.loader import partition_records, read_source_records
from loadtools.csvpipe.types import SourceFormat, TargetField
from loadtools.validation.types import FieldValidationResult, RuleKind, Severity


def write_csv(path, text):
    path.write_text(text, encoding="utf-8")
    return path


# -------------------------------------------------------
# Reading
# -------------------------------------------------------

def test_reads_header_rows_with_line_numbers(tmp_path):
    src = write_csv(tmp_path / "in.csv", "first,last,status\nJane,Doe,A\n\nJohn,Roe,T\n")
    records = read_source_records(src)
    assert [r.line for r in records] == [2, 4]
    assert records[0].fields == {"first": "Jane", "last": "Doe", "status": "A"}
    assert "status" in records[1]


def test_headerless_source_with_columns_and_short_rows(tmp_path):
    src = write_csv(tmp_path / "in.txt", "1|Ann\n2\n3|Bob|extra\n")
    fmt = SourceFormat(delimiter="|", header=False, columns=("id", "name"))
    records = read_source_records(src, fmt)
    assert records[1].fields == {"id": "2"}
    assert records[2].fields["_extra"] == "extra"


def test_partitions_are_contiguous_slices():
    items = list(range(10))
    parts = partition_records(items, workers=3)
    assert [list(p) for p in parts] == [[0, 1, 2, 3], [4, 5, 6, 7], [8, 9]]
    assert partition_records(items, workers=3, partition_size=5) == [items[:5], items[5:]]
    assert partition_records([], workers=4) == []


# -------------------------------------------------------
# Emitting
# -------------------------------------------------------

def test_delimited_and_fixed_lines():
    targets = [TargetField("A", 1, length=4), TargetField("B", 2, length=5, data_type="INTEGER", start=5)]
    row = {"A": "x|y", "B": "42"}
    assert render_data_line(row, targets, "delimited", "|") == '"x|y"|42'
    targets = [TargetField("A", 1, length=4, start=1), TargetField("B", 2, length=5, data_type="INTEGER", start=5)]
    assert render_data_line({"A": "ab", "B": "42"}, targets, "fixed") == "ab  00042"


def test_write_data_file_dry_run_returns_lines(tmp_path):
    targets = [TargetField("A", 1)]
    lines = write_data_file(tmp_path / "out.dat", [{"A": "1"}, {"A": "2"}], targets, dry_run=True)
    assert lines == ["1", "2"]
    assert not (tmp_path / "out.dat").exists()


def test_rejects_one_row_per_failure(tmp_path):
    failure = FieldValidationResult(field="email", kind=RuleKind.EMAIL, passed=False,
                                    severity=Severity.ERROR, message="invalid email address", value="x@")
    path = write_rejects(tmp_path / "errors" / "r.csv", [
        {"line": 7, "record": {"email": "x@"}, "failures": [failure, failure]},
    ])
    with path.open(newline="") as f:
        rows = list(csv.DictReader(f))
    assert len(rows) == 2
    assert rows[0]["line"] == "7"
    assert rows[0]["kind"] == "email"
    assert json.loads(rows[0]["record"]) == {"email": "x@"}
