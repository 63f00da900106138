"""
Error taxonomy for CrisisWatch.

* ``ValidationError``   -- a score, severity, or status outside its domain;
  rejected before anything is persisted.
* ``NotFoundError``     -- unknown session, handoff, or review identifier.
* ``ConcurrencyError``  -- an optimistic status precondition failed.  The
  caller must re-fetch and retry.
* ``InvalidTransitionError`` -- the requested transition is not permitted
  from the stored state (including every terminal state).
* ``PersistenceError``  -- the store failed inside a transaction.  The
  transaction has been rolled back in full.
"""


class CrisisWatchError(Exception):
    """Base class for all CrisisWatch errors."""
    pass


class ValidationError(CrisisWatchError, ValueError):
    """Raised when a value is outside its allowed domain."""
    pass


class NotFoundError(CrisisWatchError, LookupError):
    """Raised when an identifier does not resolve to a stored record."""
    pass


class ConcurrencyError(CrisisWatchError):
    """Raised when a status precondition no longer holds."""
    pass


class InvalidTransitionError(ConcurrencyError):
    """Raised when a state transition is not permitted."""
    pass


class PersistenceError(CrisisWatchError):
    """Raised when a storage operation fails and is rolled back."""
    pass
