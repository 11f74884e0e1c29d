"""Failure kinds shared by every storage backend and the executor.

Adapters translate their client library's exceptions into one of these at
the adapter boundary; the executor decides per profile which of them are
worth another attempt.
"""


class TPCCError(Exception):
    pass


class NotFoundError(TPCCError):
    """The targeted row does not exist."""


class ConflictError(TPCCError):
    """An optimistic check or a concurrent writer won the race."""


class InvalidItemError(TPCCError):
    """New-Order referenced an unused item id (the mandated 1% rollback)."""


class TransportError(TPCCError):
    """Connectivity or backend fault."""


class CancelledError(TransportError):
    """The caller cancelled the profile while it was running."""
