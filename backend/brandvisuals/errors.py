from __future__ import annotations


class BrandVisualsError(Exception):
    code = "internal_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationFailed(BrandVisualsError):
    code = "invalid_request"


class QuotaExceeded(BrandVisualsError):
    code = "quota_exceeded"


class BrandNotFound(BrandVisualsError):
    code = "brand_not_found"


class BrandAccessDenied(BrandVisualsError):
    code = "access_denied"


class JobSetNotFound(BrandVisualsError):
    code = "job_set_not_found"


class PlanningFailed(BrandVisualsError):
    code = "planning_failed"


class JobSetCreationFailed(BrandVisualsError):
    code = "job_set_creation_failed"


class RequestInProgress(BrandVisualsError):
    code = "REQUEST_IN_PROGRESS"


class IdempotencyError(BrandVisualsError):
    code = "IDEMPOTENCY_ERROR"


# Collaborator failures raised inside the generation pipeline.

class ProviderError(BrandVisualsError):
    """Failure reported by an external generation provider.

    `kind` drives retry policy: only `transient` errors are retried inline,
    `rate_limited` defers the job, everything else fails it.
    """

    code = "provider_error"
    KINDS = ("transient", "rate_limited", "insufficient_credit", "permanent")

    def __init__(self, message: str, *, kind: str = "transient", status_code: int | None = None):
        super().__init__(message)
        self.kind = kind if kind in self.KINDS else "permanent"
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind in {"transient", "rate_limited"}


class CompositingError(BrandVisualsError):
    code = "compositing_failed"


class StorageError(BrandVisualsError):
    code = "storage_failed"


class DeadlineExceeded(BrandVisualsError):
    code = "deadline_exceeded"


class StageFailure(BrandVisualsError):
    """A pipeline stage failed; carries where it failed and whether a retry may help."""

    code = "stage_failed"

    def __init__(self, stage: str, message: str, *, retryable: bool, rate_limited: bool = False):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.retryable = retryable
        self.rate_limited = rate_limited
