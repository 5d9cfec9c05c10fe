from __future__ import annotations


class InputError(ValueError):
    """Malformed listing or candidate: bad coordinates, empty address text."""


class PersistenceError(RuntimeError):
    """The workbook or key-value store could not be read or written."""
