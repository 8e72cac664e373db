from . import types
from . import formats
from . import mapping
from . import loader
from . import emit

__all__ = [
    "types",
    "formats",
    "mapping",
    "loader",
    "emit",
]
