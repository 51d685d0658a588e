"""
Exception taxonomy for the Settlement Sync service.
Row-scoped problems are logged and dropped by callers; everything here is
raised only where a whole operation (one store call, one sync unit, one
request) has to give up.
"""


class SettlementError(Exception):
    """Base class for all settlement sync errors."""


class ValidationError(SettlementError):
    """A record or request value is malformed and was rejected before persistence."""


class StoreUnavailable(SettlementError):
    """The underlying sqlite database could not be opened."""


class StoreWriteError(SettlementError):
    """A write against an opened store failed."""


class SessionOpenFailed(SettlementError):
    """A worker session (ephemeral fetch context) could not be created."""


class SessionTimeout(SettlementError):
    """A worker session did not report within the allowed time."""


class AlreadySyncing(SettlementError):
    """A sync run was requested while another one is active."""


class NoWorkToDo(SettlementError):
    """The requested sync range contains no months."""


class ObserverUnreachable(SettlementError):
    """The observer that requested the sync can no longer receive events."""
