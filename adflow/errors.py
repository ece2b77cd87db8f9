from typing import Optional


class AdflowError(Exception):
    """Base class for every error raised by the ad pipeline."""


class ValidationError(AdflowError):
    """Bad row or input shape. Fatal for the job, never retried."""


class TransientExternalError(AdflowError):
    """Timeout, rate limit or 5xx from a remote collaborator."""


class NonRetryableExternalError(AdflowError):
    """4xx auth/permission style failure from a remote collaborator."""


class NotAnalyzable(AdflowError):
    """
    The asset cannot be analyzed (no matching source, unsupported media).

    Maps to a `skipped` job, not a failure.
    """


class CostGuardRejected(AdflowError):
    """
    Estimated analysis cost exceeds the configured ceiling.

    Maps to a `skipped` job with the reason recorded.
    """

    def __init__(self, message: str, estimated_cost: Optional[float] = None) -> None:
        super().__init__(message)
        self.estimated_cost = estimated_cost


class PublishError(AdflowError):
    """Creating platform objects failed. Upstream artifacts stay usable."""


class RecordSyncError(AdflowError):
    """Updating the external record failed. Logged only."""


class InvalidTransition(AdflowError):
    """A job was asked to move along an edge the state machine does not have."""


class StageFailed(AdflowError):
    """
    Raised when a stage cannot complete: retries exhausted or the error was
    not retryable. Carries the stage name and the last underlying error.
    """

    def __init__(self, stage: str, last_error: BaseException) -> None:
        self.stage = stage
        self.last_error = last_error
        super().__init__(f"{stage} failed: {describe_error(last_error)}")


def describe_error(exc: BaseException) -> str:
    """Human-readable one-liner for an exception, never empty."""
    message = str(exc).strip()
    if not message:
        return type(exc).__name__
    return message
