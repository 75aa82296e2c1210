from __future__ import annotations


class TagPushError(Exception):
    """Base error for tagpush."""


class ValidationError(TagPushError):
    """Malformed caller input; surfaced before any enqueue and never retried."""


class InvalidArgumentError(ValidationError):
    """Registry query called with unusable arguments."""


class MalformedJobError(TagPushError):
    """Dequeued job failed structural validation; retrying cannot fix it."""


class TransientGatewayError(TagPushError):
    """Batch send failed for a reason that does not invalidate its tokens."""


class PermanentTokenError(TagPushError):
    """Gateway reported a token as gone or malformed."""

    def __init__(self, token: str, reason: str) -> None:
        super().__init__(f"token rejected: {reason}")
        self.token = token
        self.reason = reason


class AllBatchesFailedError(TagPushError):
    """Every batch of a job failed; the job is eligible for queue retry."""

    def __init__(self, failed_batches: int) -> None:
        super().__init__(f"All {failed_batches} batches failed to process")
        self.failed_batches = failed_batches


class ReconciliationError(TagPushError):
    """Invalid-token cleanup failed; logged and absorbed by the reconciler."""


class GatewayConfigError(TagPushError):
    """Missing or invalid push gateway configuration."""


class QueueUnavailableError(TagPushError):
    """Job queue rejected or could not accept an enqueue."""


class JobCancelledError(TagPushError):
    """Job was cut off before finishing: job timeout, abort, or shutdown on its last attempt."""
