from .base import (
    NOT_FOUND,
    AuditSink,
    ConfigurationProvider,
    KeySetProvider,
    LookupProvider,
    QueryProvider,
)
from .memory import CallableQueryProvider, DictLookupProvider, StaticConfigurationProvider

__all__ = [
    "NOT_FOUND",
    "AuditSink",
    "ConfigurationProvider",
    "KeySetProvider",
    "LookupProvider",
    "QueryProvider",
    "CallableQueryProvider",
    "DictLookupProvider",
    "StaticConfigurationProvider",
]
