from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from loadtools.errors import ConfigurationError

from .base import NOT_FOUND


class DictLookupProvider:
    """
    Lookup and key-set provider over in-memory tables:

        DictLookupProvider({"DEPT": {"10": "Sales", "20": "Ops"}})
    """

    def __init__(self, tables: Mapping[str, Mapping[str, Any]]):
        self.tables: Dict[str, Dict[str, Any]] = {t: dict(rows) for t, rows in tables.items()}
        self.calls = 0

    def query(self, table: str, key: str) -> Any:
        self.calls += 1
        if table not in self.tables:
            raise KeyError(f"unknown lookup table {table!r}")
        return self.tables[table].get(key, NOT_FOUND)

    def load_keys(self, table: str, column: str) -> Iterable[str]:
        # column is ignored: the table's keys are the key column
        self.calls += 1
        if table not in self.tables:
            raise KeyError(f"unknown reference table {table!r}")
        return list(self.tables[table])


class CallableQueryProvider:
    """
    Query provider backed by named Python predicates instead of SQL text.
    ``predicates`` maps the configured predicate string to a callable
    receiving the bindings dict.
    """

    def __init__(self, predicates: Mapping[str, Callable[[Dict[str, Any]], bool]]):
        self.predicates = dict(predicates)
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def evaluate(self, predicate: str, bindings: Dict[str, Any]) -> bool:
        self.calls.append((predicate, dict(bindings)))
        if predicate not in self.predicates:
            raise KeyError(f"unknown predicate {predicate!r}")
        return bool(self.predicates[predicate](bindings))


class StaticConfigurationProvider:
    """Serves pre-built configurations by job id."""

    def __init__(self, configs: Optional[Mapping[str, Any]] = None):
        self.configs = dict(configs or {})

    def load(self, job_id: str) -> Any:
        if job_id not in self.configs:
            raise ConfigurationError(f"no configuration for job {job_id!r}")
        return self.configs[job_id]
