"""Engine error taxonomy.

Run-level errors end a run; item-level errors are counted and the run goes on.
"""

from __future__ import annotations


class ConcordError(Exception):
    """Base class for engine errors."""


class RunAlreadyActive(ConcordError):
    """A run is already in progress for the tenant scope."""

    def __init__(self, tenant_id: str | None, active_run_id: str | None = None):
        self.tenant_id = tenant_id
        self.active_run_id = active_run_id
        scope = f"tenant '{tenant_id}'" if tenant_id is not None else "system scope"
        message = f"An automation run is already active for {scope}"
        if active_run_id:
            message += f" (run={active_run_id})"
        super().__init__(message)


class SourceUnavailable(ConcordError):
    """The source adapter could not be reached or its stream could not be opened."""

    def __init__(self, source: str, cause: BaseException | None = None):
        self.source = source
        self.cause = cause
        detail = f": {type(cause).__name__}: {cause}" if cause else ""
        super().__init__(f"Source '{source}' unavailable{detail}")


class SourceStreamError(ConcordError):
    """The source adapter failed after the stream was opened."""

    def __init__(self, source: str, cause: BaseException):
        self.source = source
        self.cause = cause
        super().__init__(f"Source '{source}' failed mid-stream: {type(cause).__name__}: {cause}")


class ItemValidationError(ConcordError):
    """A single candidate is malformed."""

    def __init__(self, message: str, key: str | None = None):
        self.key = key
        super().__init__(message)


class ApplyFailure(ConcordError):
    """The store rejected the write for a single item."""


class StoreUnavailable(ConcordError):
    """The run record store could not be written (counter flush or finalize)."""


class RunInterrupted(ConcordError):
    """The run stopped early: cancelled, timed out, or aborted on an error burst."""

    def __init__(self, reason: str, message: str | None = None):
        self.reason = reason
        super().__init__(message or reason)
