"""Application-level exception types.

Convention:
- ``InternalServerError``: for errors whose details must never reach clients
  (misconfiguration, unexpected persistence failures).  The global handler
  logs the full message at ERROR and returns a generic
  "Internal server error" (500) to the client.
- ``ValueError``: for request validation errors that are safe to forward to
  clients (bad strategy names, lone Live Photo videos, invalid storage
  configuration).  The global ``ValueError`` handler returns ``str(exc)`` as
  the 422 detail.
- The remaining classes map one-to-one onto HTTP statuses in
  ``backend/main.py`` and carry client-safe messages.
"""

from __future__ import annotations


class InternalServerError(Exception):
    """Raised for internal errors whose details must not be exposed to clients.

    The global exception handler in ``backend/main.py`` catches this, logs
    the full message server-side, and returns HTTP 500 with a generic
    ``"Internal server error"`` detail.
    """


class NotFoundError(Exception):
    """Raised when a catalogue row addressed by id does not exist for the tenant."""


class StateConflictError(Exception):
    """Raised when a row is not in the state an operation requires.

    Examples: resolving a row that is not in ``conflict`` status, or a
    conflict payload that lacks the data a strategy needs.
    """


class QuotaExceededError(Exception):
    """Raised when library size or processing allowance would be exceeded."""


class ObjectTooLargeError(Exception):
    """Raised when a storage object or upload exceeds the per-object size limit."""


class ManifestGenerationError(Exception):
    """Raised when the manifest builder cannot produce an item where one is required."""


class UploadAbortedError(Exception):
    """Raised when an upload is cancelled by the caller.

    Cooperative cancellation, not a failure: it is never counted as an item
    error and already-applied catalogue writes are kept.
    """
