"""load-tools: validated, transformed bulk loads driven through an external loader."""

__version__ = "0.1.0"
