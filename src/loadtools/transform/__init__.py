"""
Field transformation: mapping-rule evaluation and lookup caching.

Exports the public API:
- TransformationEngine
- LookupCache
"""
from .cache import LookupCache
from .engine import TransformationEngine
