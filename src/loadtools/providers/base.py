from __future__ import annotations

from typing import Any, Dict, Iterable, Protocol, runtime_checkable


class _NotFound:
    """Sentinel returned by lookup providers for an unknown key."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_FOUND"

    def __bool__(self) -> bool:
        return False


NOT_FOUND = _NotFound()


@runtime_checkable
class ConfigurationProvider(Protocol):
    def load(self, job_id: str) -> Any:
        """Return a JobConfiguration or raise ConfigurationError."""


@runtime_checkable
class AuditSink(Protocol):
    def emit(self, event: Any) -> None:
        ...


@runtime_checkable
class LookupProvider(Protocol):
    def query(self, table: str, key: str) -> Any:
        """Return the mapped value or NOT_FOUND."""


@runtime_checkable
class QueryProvider(Protocol):
    def evaluate(self, predicate: str, bindings: Dict[str, Any]) -> bool:
        """Evaluate a parameterized predicate; values travel only through ``bindings``."""


@runtime_checkable
class KeySetProvider(Protocol):
    def load_keys(self, table: str, column: str) -> Iterable[str]:
        ...
