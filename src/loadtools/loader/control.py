from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import jinja2

from loadtools.csvpipe.formats import ISO_DATE
from loadtools.errors import ConfigurationError

from .types import LOADER_TYPES, ControlField, ControlSpecification, LoaderOptions

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates" / "control"
DEFAULT_TEMPLATE = "sqlldr.ctl.j2"
LOAD_METHODS = ("APPEND", "INSERT", "REPLACE", "TRUNCATE")


def _timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime())


# ---------------------------------------------------------------------
# Specification
# ---------------------------------------------------------------------

def build_control_spec(
    config: Any,
    data_file: Path,
    correlation_id: str,
    temp_dir: Path,
    generated_at: Optional[str] = None,
) -> ControlSpecification:
    """
    Control specification for one execution. The control, log, bad and
    discard files share the ``<job>_<correlation>`` base name in ``temp_dir``.
    """
    target = config.target
    load_method = target.load_method.upper()
    if load_method not in LOAD_METHODS:
        raise ConfigurationError(f"unknown load method {target.load_method!r}")

    base = Path(temp_dir) / f"{config.job_id}_{correlation_id}"
    fields = tuple(
        ControlField(
            name=t.name,
            position=t.position,
            data_type=t.data_type,
            length=t.length,
            format=(t.format or ISO_DATE) if t.data_type == "DATE" else None,
            scale=t.scale if t.data_type == "DECIMAL" else 0,
            start=t.start,
            nullif=t.nullif,
            defaultif=t.defaultif,
            trim=t.trim,
            case=t.case,
        )
        for t in sorted((r.target for r in config.mapping_rules), key=lambda t: t.position)
    )
    return ControlSpecification(
        job_id=config.job_id,
        correlation_id=correlation_id,
        target_table=target.table,
        fields=fields,
        data_file=Path(data_file),
        bad_file=base.with_suffix(".bad"),
        discard_file=base.with_suffix(".dsc"),
        log_file=base.with_suffix(".log"),
        control_file=base.with_suffix(".ctl"),
        record_format=target.record_format,
        delimiter=target.delimiter,
        load_method=load_method,
        options=config.loader.options,
        template=config.loader.template,
        generated_at=generated_at or _timestamp(),
    )


# ---------------------------------------------------------------------
# Rendering: every clause is assembled here, the template only substitutes
# ---------------------------------------------------------------------

def quote_delimiter(delim: str) -> str:
    if len(delim) == 1 and delim.isprintable() and delim not in "'\\":
        return f"'{delim}'"
    return "X'" + delim.encode("utf-8").hex().upper() + "'"


def options_clause(opts: LoaderOptions) -> str:
    parts = [f"DIRECT={'TRUE' if opts.direct_path else 'FALSE'}"]
    if opts.parallel_degree > 1:
        parts.append("PARALLEL=TRUE")
    if opts.errors is not None:
        parts.append(f"ERRORS={opts.errors}")
    parts.append(f"SKIP={opts.skip}")
    if opts.rows is not None and not opts.direct_path:
        parts.append(f"ROWS={opts.rows}")
    if opts.bind_size is not None:
        parts.append(f"BINDSIZE={opts.bind_size}")
    if opts.read_size is not None:
        parts.append(f"READSIZE={opts.read_size}")
    return "OPTIONS (" + ", ".join(parts) + ")"


def sql_expression(f: ControlField) -> Optional[str]:
    """Loader SQL string for the column: trim, then case, then implied-decimal scaling."""
    expr = f":{f.name}"
    if f.trim:
        expr = f"LTRIM(RTRIM({expr}))"
    if f.case:
        expr = f"{f.case.upper()}({expr})"
    if f.data_type == "DECIMAL" and f.scale:
        expr = f"{expr}/{10 ** f.scale}"
    return None if expr == f":{f.name}" else expr


def field_clause(f: ControlField, record_format: str) -> str:
    line = f"  {f.name}"
    if record_format == "fixed":
        line += f" POSITION({f.start}:{f.end})"
    line += f" {f.loader_type}"
    if f.length is not None:
        line += f"({f.length})"
    if f.data_type == "DATE":
        line += f' "{f.format or ISO_DATE}"'
    if f.nullif:
        line += f" NULLIF {f.nullif}"
    if f.defaultif:
        line += f" DEFAULTIF {f.defaultif}"
    sql = sql_expression(f)
    if sql:
        line += f' "{sql}"'
    return line


def template_context(spec: ControlSpecification) -> Dict[str, Any]:
    if spec.record_format == "fixed":
        record_clause = "TRAILING NULLCOLS"
    else:
        record_clause = (
            f"FIELDS TERMINATED BY {quote_delimiter(spec.delimiter)} "
            "OPTIONALLY ENCLOSED BY '\"'\nTRAILING NULLCOLS"
        )
    return {
        "job_id": spec.job_id,
        "correlation_id": spec.correlation_id,
        "target_table": spec.target_table,
        "generated_at": spec.generated_at,
        "options_clause": options_clause(spec.options),
        "characterset": spec.options.characterset,
        "data_file": spec.data_file,
        "bad_file": spec.bad_file,
        "discard_file": spec.discard_file,
        "load_method": spec.load_method,
        "record_clause": record_clause,
        "field_list": ",\n".join(field_clause(f, spec.record_format) for f in spec.fields),
    }


def _environment(template_dirs: Sequence[Path] = ()) -> jinja2.Environment:
    search = [str(Path(d)) for d in template_dirs] + [str(TEMPLATE_DIR)]
    return jinja2.Environment(
        loader=jinja2.FileSystemLoader(search),
        undefined=jinja2.StrictUndefined,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


def render_control_file(spec: ControlSpecification, template_dirs: Sequence[Path] = ()) -> str:
    try:
        tpl = _environment(template_dirs).get_template(spec.template)
    except jinja2.TemplateNotFound as e:
        raise ConfigurationError(f"control template not found: {spec.template}") from e
    return tpl.render(**template_context(spec))


def write_control_file(spec: ControlSpecification, template_dirs: Sequence[Path] = ()) -> Path:
    text = render_control_file(spec, template_dirs)
    spec.control_file.parent.mkdir(parents=True, exist_ok=True)
    spec.control_file.write_text(text, encoding="utf-8")
    return spec.control_file


# ---------------------------------------------------------------------
# Re-parsing (for audits and round-trip checks)
# ---------------------------------------------------------------------

_TYPE_FROM_LOADER = {v: k for k, v in LOADER_TYPES.items()}

FIELD_LINE = re.compile(
    r"^\s*(?P<name>[\w$#]+)"
    r"(?:\s+POSITION\((?P<start>\d+):(?P<end>\d+)\))?"
    r"\s+(?P<type>CHAR|INTEGER EXTERNAL|DECIMAL EXTERNAL|DATE)"
    r"(?:\((?P<length>\d+)\))?"
    r'(?:\s+"(?P<quoted>[^"]*)")?'
    r'(?:\s+NULLIF\s+(?P<nullif>[^"]+?))?'
    r'(?:\s+DEFAULTIF\s+(?P<defaultif>[^"]+?))?'
    r'(?:\s+"(?P<sql>[^"]*)")?'
    r"\s*,?\s*$"
)
OPTIONS_LINE = re.compile(r"^OPTIONS\s*\((?P<body>.*)\)\s*$")
INTO_LINE = re.compile(r"^(?P<method>APPEND|INSERT|REPLACE|TRUNCATE)\s+INTO\s+TABLE\s+(?P<table>\S+)")
FILE_LINE = re.compile(r"^(?P<kind>INFILE|BADFILE|DISCARDFILE)\s+'(?P<path>[^']*)'")
TERMINATED = re.compile(r"TERMINATED BY (?:'(?P<char>.)'|X'(?P<hex>[0-9A-F]+)')")
SCALE_EXPR = re.compile(r"^(?P<body>.+?)/1(?P<zeros>0+)$")
CASE_EXPR = re.compile(r"^(?P<case>UPPER|LOWER)\((?P<body>.*)\)$")
TRIM_EXPR = re.compile(r"^LTRIM\(RTRIM\((?P<body>.*)\)\)$")


def parse_control_file(text: str) -> Dict[str, Any]:
    """
    Recover table, files, options and the field map from a rendered control
    file. The field map has the same shape as ``ControlSpecification.field_map``.
    """
    out: Dict[str, Any] = {"options": {}, "fields": {}, "record_format": "fixed", "delimiter": None}
    in_fields = False
    field_lines: List[str] = []

    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("--"):
            continue
        if in_fields:
            if line == ")":
                in_fields = False
            else:
                field_lines.append(raw)
            continue
        if line == "(":
            in_fields = True
            continue

        m = OPTIONS_LINE.match(line)
        if m:
            for item in m.group("body").split(","):
                key, _, value = item.strip().partition("=")
                out["options"][key.strip()] = value.strip()
            continue
        m = INTO_LINE.match(line)
        if m:
            out["load_method"] = m.group("method")
            out["table"] = m.group("table")
            continue
        m = FILE_LINE.match(line)
        if m:
            out[{"INFILE": "data_file", "BADFILE": "bad_file", "DISCARDFILE": "discard_file"}[m.group("kind")]] = m.group("path")
            continue
        m = TERMINATED.search(line)
        if m:
            out["record_format"] = "delimited"
            out["delimiter"] = m.group("char") or bytes.fromhex(m.group("hex")).decode("utf-8")

    for index, raw in enumerate(field_lines, start=1):
        m = FIELD_LINE.match(raw)
        if not m:
            raise ValueError(f"unparseable control field line: {raw.strip()!r}")
        dtype = _TYPE_FROM_LOADER[m.group("type")]
        fmt, sql = m.group("quoted"), m.group("sql")
        if dtype != "DATE" and sql is None:
            # only DATE carries a mask, so a lone quoted string is the SQL string
            fmt, sql = None, fmt
        options = _sql_options(sql or "", dtype)
        out["fields"][m.group("name")] = {
            "position": index,
            "length": int(m.group("length")) if m.group("length") else None,
            "data_type": dtype,
            "format": fmt,
            "start": int(m.group("start")) if m.group("start") else 0,
            "nullif": m.group("nullif"),
            "defaultif": m.group("defaultif"),
            **options,
        }
    return out


def _sql_options(sql: str, dtype: str) -> Dict[str, Any]:
    """Undo ``sql_expression``: recover scale, case and trim from the SQL string."""
    scale, case, trim = 0, None, False
    m = SCALE_EXPR.match(sql)
    if m and dtype == "DECIMAL":
        sql, scale = m.group("body"), len(m.group("zeros"))
    m = CASE_EXPR.match(sql)
    if m:
        sql, case = m.group("body"), m.group("case").lower()
    m = TRIM_EXPR.match(sql)
    if m:
        trim = True
    return {"scale": scale, "trim": trim, "case": case}
