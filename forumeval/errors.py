"""Error taxonomy for the evaluation pipeline.

Every error carries a stable ``code`` (reported as the error ``type`` in the
run summary) and a ``retryable`` flag read by the retry controller.

Transient errors are retried with backoff; permanent errors abandon the
batch; persistence errors are recovered per item; a fatal error aborts the
run for one forum.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    code = "PIPELINE_ERROR"
    retryable = False


# ---------------------------------------------------------------------------
# Transient (retried)
# ---------------------------------------------------------------------------


class TransientError(PipelineError):
    code = "TRANSIENT_ERROR"
    retryable = True


class RateLimitedError(TransientError):
    code = "RATE_LIMITED"


class NetworkError(TransientError):
    code = "NETWORK_ERROR"


class EvaluationTimeoutError(TransientError):
    code = "TIMEOUT"


# ---------------------------------------------------------------------------
# Permanent (batch abandoned, no retry)
# ---------------------------------------------------------------------------


class PermanentError(PipelineError):
    code = "PERMANENT_ERROR"


class AuthError(PermanentError):
    code = "AUTH_ERROR"


class InvalidRequestError(PermanentError):
    code = "INVALID_REQUEST"


class InvalidResponseError(PermanentError):
    code = "INVALID_RESPONSE"


class ValidationError(PermanentError):
    """A model response item does not match the evaluation schema."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, index: int | None = None) -> None:
        super().__init__(message)
        self.index = index


class BatchMismatchError(PermanentError):
    """The model returned a different number of results than were submitted."""

    code = "BATCH_MISMATCH"

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(
            f"Expected {expected} evaluations, received {received}"
        )
        self.expected = expected
        self.received = received


class RetryExhaustedError(PermanentError):
    code = "RETRY_EXHAUSTED"

    def __init__(self, attempts: int, last_error: Exception) -> None:
        super().__init__(
            f"Gave up after {attempts} attempts: {last_error}"
        )
        self.attempts = attempts
        self.last_error = last_error


# ---------------------------------------------------------------------------
# Persistence (per item)
# ---------------------------------------------------------------------------


class PersistenceError(PipelineError):
    code = "PERSISTENCE_ERROR"

    def __init__(self, message: str, content_id: int | None = None) -> None:
        super().__init__(message)
        self.content_id = content_id


class DuplicateEvaluationError(PersistenceError):
    """The item already has an evaluation for this model."""

    code = "DUPLICATE"


# ---------------------------------------------------------------------------
# Fatal (aborts the forum run)
# ---------------------------------------------------------------------------


class FatalError(PipelineError):
    code = "FATAL"

    def __init__(self, message: str, forum: str | None = None) -> None:
        super().__init__(message)
        self.forum = forum
