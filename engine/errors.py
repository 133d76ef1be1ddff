"""Error taxonomy shared by the queue engine, workers and stream manager."""

from __future__ import annotations


class RerunError(Exception):
    """Base class for all lifecycle errors."""


class NotFoundError(RerunError):
    """Unknown VOD id or playlist position."""


class InvalidStateError(RerunError):
    """Operation is not valid for the current status."""


class ConfigurationError(RerunError):
    """Missing external tool or credential. Fatal, never retried."""


class ExternalToolFailure(RerunError):
    """An external tool exited nonzero and the idempotent recheck did not apply."""

    def __init__(self, message, *, exit_code=None, output=""):
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


class CancelledError(RerunError):
    """Raised when a subprocess was terminated on request (pause, stop, skip)."""


class CapacityExceededError(RerunError):
    """Adding the VOD would push the playlist over its duration cap."""


class StorageInconsistencyError(RerunError):
    """Expected output file is missing after a reported success."""


class CatalogError(RerunError):
    """The upstream catalog API rejected a request or returned bad data."""


# Errors the download queue answers with retry/backoff.
RETRYABLE_ERRORS = (ExternalToolFailure, StorageInconsistencyError)
