"""Error taxonomy for the scan pipeline.

Every failure the core reports to a caller is a :class:`LexiconError`
subclass carrying an HTTP-equivalent status code and a machine-readable
error code.  The HTTP layer turns these into JSON bodies via a single
exception handler, so route functions never build error responses by hand.

Propagation policy
------------------
- :class:`ValidationFailure` and :class:`ServiceUnavailable` fail fast and
  are never retried.
- :class:`UpstreamError` is raised by AI collaborators; the orchestrator
  retries it before giving up.
- :class:`StorageError` from non-critical stages is logged and swallowed.
- :class:`PersistenceError` from the record write is fatal to the request.
- :class:`PipelineFailure` wraps whatever ended a pipeline run together with
  the name of the stage it happened in.
"""

from __future__ import annotations


class LexiconError(Exception):
    """Base class for all errors reported by the scan core.

    Attributes:
        message: Human-readable description.
        status_code: HTTP-equivalent status code.
        code: Machine-readable error code for clients.
    """

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        """Serialise to the JSON body returned by the API."""
        return {"error": self.message, "code": self.code}


class ValidationFailure(LexiconError):
    """Caller error: bad, missing, or oversized input."""

    status_code = 400
    code = "INVALID_INPUT"


class UpstreamError(LexiconError):
    """A required AI collaborator failed."""

    status_code = 500
    code = "UPSTREAM_ERROR"


class StorageError(LexiconError):
    """The blob store rejected an upload or signing request."""

    status_code = 500
    code = "STORAGE_ERROR"


class PersistenceError(LexiconError):
    """The document store could not read or write a record."""

    status_code = 500
    code = "PERSISTENCE_ERROR"


class ServiceUnavailable(LexiconError):
    """A required collaborator is not configured or not reachable at all."""

    status_code = 503
    code = "SERVICE_UNAVAILABLE"

    def __init__(self, service: str, *, code: str | None = None):
        super().__init__(f"{service} is temporarily unavailable", code=code)
        self.service = service


class PipelineFailure(LexiconError):
    """A scan pipeline run ended in its ``Error`` state.

    Attributes:
        stage: Name of the stage that failed (``"analyzing"``,
            ``"synthesizing"``, ``"persisting_record"``...).
        cause: The exception that ended the run.  Also chained as
            ``__cause__`` by the raiser.
    """

    status_code = 500
    code = "PIPELINE_ERROR"

    def __init__(self, stage: str, cause: BaseException):
        super().__init__(f"Neural evolution failed at {stage}: {cause}")
        self.stage = stage
        self.cause = cause

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["stage"] = self.stage
        return body


class RateLimitExceeded(LexiconError):
    """A client sent more requests than its window allows."""

    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, *, retry_after_s: int, code: str | None = None):
        super().__init__(message, code=code)
        self.retry_after_s = retry_after_s

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["retry_after"] = self.retry_after_s
        return body
