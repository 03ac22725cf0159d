"""Exceptions raised by the stores."""


class StoreError(Exception):
    """A store operation failed for an I/O reason (connection, write error)."""
    pass
