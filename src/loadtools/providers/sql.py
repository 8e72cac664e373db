"""SQLAlchemy-backed lookup, key-set and predicate providers.

Values always travel as bound parameters. Table and column names cannot be
bound, so they are checked against a strict identifier pattern before they
are placed in a statement.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from sqlalchemy import bindparam, column, create_engine, select, table, text
from sqlalchemy.engine import Engine

from .base import NOT_FOUND

log = logging.getLogger("loadtools.providers.sql")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*$")
_BIND_NAME = re.compile(r"(?<![:\w\\]):(\w+)(?!:)")


def checked_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name or ""):
        raise ValueError(f"invalid SQL identifier: {name!r}")
    return name


def _table(name: str):
    # schema-qualified names: SCHEMA.TABLE
    parts = [checked_identifier(p) for p in name.split(".")]
    if len(parts) == 1:
        return table(parts[0])
    if len(parts) == 2:
        return table(parts[1], schema=parts[0])
    raise ValueError(f"invalid table name: {name!r}")


def _engine(bind: Union[str, Engine]) -> Engine:
    return create_engine(bind) if isinstance(bind, str) else bind


class SqlLookupProvider:
    """
    Lookup tables declared as ``{name: {table, key_column, value_column}}``:

        SqlLookupProvider(engine, {"DEPT": {"table": "departments",
                                            "key_column": "code",
                                            "value_column": "name"}})
    """

    def __init__(self, bind: Union[str, Engine], tables: Mapping[str, Mapping[str, str]]):
        self.engine = _engine(bind)
        self._statements = {}
        for name, spec in tables.items():
            key_col = checked_identifier(spec["key_column"])
            value_col = checked_identifier(spec["value_column"])
            self._statements[name] = (
                select(column(value_col))
                .select_from(_table(spec["table"]))
                .where(column(key_col) == bindparam("key"))
                .limit(1)
            )

    def query(self, table_name: str, key: str) -> Any:
        if table_name not in self._statements:
            raise KeyError(f"unknown lookup table {table_name!r}")
        with self.engine.connect() as conn:
            row = conn.execute(self._statements[table_name], {"key": key}).first()
        return NOT_FOUND if row is None else row[0]


class SqlKeySetProvider:
    """Loads every distinct value of a reference column in one query."""

    def __init__(self, bind: Union[str, Engine]):
        self.engine = _engine(bind)

    def load_keys(self, table_name: str, column_name: str) -> Iterable[str]:
        stmt = select(column(checked_identifier(column_name))).select_from(_table(table_name)).distinct()
        with self.engine.connect() as conn:
            keys = [str(r[0]) for r in conn.execute(stmt) if r[0] is not None]
        log.debug("Loaded %d keys from %s.%s", len(keys), table_name, column_name)
        return keys


class SqlQueryProvider:
    """
    Evaluates a predicate written as SQL text with ``:name`` placeholders.
    The predicate is true when the first column of the first row is truthy
    (``SELECT COUNT(*) ... WHERE acct = :value`` style).
    """

    def __init__(self, bind: Union[str, Engine]):
        self.engine = _engine(bind)
        self._compiled: Dict[str, Any] = {}

    def _statement(self, predicate: str):
        stmt = self._compiled.get(predicate)
        if stmt is None:
            stmt = self._compiled[predicate] = text(predicate)
        return stmt

    def evaluate(self, predicate: str, bindings: Dict[str, Any]) -> bool:
        names = set(_BIND_NAME.findall(predicate))
        missing = names - set(bindings)
        if missing:
            raise KeyError(f"unbound parameters {sorted(missing)} in predicate")
        params = {k: v for k, v in bindings.items() if k in names}
        with self.engine.connect() as conn:
            row = conn.execute(self._statement(predicate), params).first()
        return bool(row[0]) if row is not None else False


def sql_providers(url: Optional[str], lookup_tables: Optional[Mapping[str, Mapping[str, str]]] = None) -> Dict[str, Any]:
    """Build the three providers over one engine; empty dict without a URL."""
    if not url:
        return {}
    engine = create_engine(url)
    return {
        "lookup": SqlLookupProvider(engine, lookup_tables or {}),
        "keys": SqlKeySetProvider(engine),
        "query": SqlQueryProvider(engine),
    }
