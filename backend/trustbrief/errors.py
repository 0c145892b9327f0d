"""
Error taxonomy.

Three kinds of failure move through the system:

- DomainError: the request itself is wrong (bad payload, unknown run) or an
  outcome is final. Carries a stable code and an HTTP-equivalent status.
  Never retried when the status is below 500.
- TransientError: an external dependency hiccuped (rate limit, timeout, 5xx).
  Retried by the call gateway and by the job queue.
- Quality-gate failures are NOT exceptions. They are Decisions returned by
  stage handlers (see services/pipeline/decisions.py).

The API layer turns DomainError into {code, message, correlation_id}.
"""

from typing import Optional


class TrustBriefError(Exception):
    """Base class for every error raised by this package."""


# =============================================================================
# DOMAIN ERRORS
# =============================================================================

class DomainError(TrustBriefError):
    code = "DOMAIN_ERROR"
    status_code = 400

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class ValidationFailure(DomainError):
    """Input rejected before any work is scheduled."""

    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, message: str, reasons: Optional[list[str]] = None):
        super().__init__(message)
        self.reasons = reasons or []

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.reasons:
            data["reasons"] = self.reasons
        return data


class InvalidJobPayloadError(DomainError):
    code = "INVALID_JOB_PAYLOAD"
    status_code = 400


class RunNotFoundError(DomainError):
    code = "RUN_NOT_FOUND"
    status_code = 404

    def __init__(self, run_id: str):
        super().__init__(f"Analysis run {run_id} not found")
        self.run_id = run_id


class QueueNotFoundError(DomainError):
    code = "QUEUE_NOT_FOUND"
    status_code = 404

    def __init__(self, queue_name: str):
        super().__init__(f"Unknown queue: {queue_name}")
        self.queue_name = queue_name


class AllProvidersFailedError(DomainError):
    """Every configured LLM provider failed or was circuit-open. Terminal for the call."""

    code = "LLM_UNAVAILABLE"
    status_code = 502

    def __init__(self, errors: dict[str, str]):
        detail = "; ".join(f"{name}: {err}" for name, err in errors.items()) or "no providers configured"
        super().__init__(f"All LLM providers failed ({detail})")
        self.errors = errors


# =============================================================================
# TRANSIENT ERRORS
# =============================================================================

class TransientError(TrustBriefError):
    """Failure of an external dependency that is worth retrying."""


class ProviderError(TransientError):
    """An LLM provider call failed."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ):
        super().__init__(f"[{provider}] {message}")
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


class RateLimitError(ProviderError):
    def __init__(self, provider: str, message: str = "rate limited"):
        super().__init__(provider, message, status_code=429, retryable=True)


class ProviderTimeoutError(ProviderError):
    def __init__(self, provider: str, timeout: float):
        super().__init__(provider, f"timed out after {timeout:.0f}s", retryable=True)
        self.timeout = timeout


class SourceSearchError(TransientError):
    """The source-search collaborator could not be reached or answered with 5xx."""


def is_retryable(exc: BaseException) -> bool:
    """
    Decide whether a failed job attempt should be retried.

    Client-side domain errors (status < 500) are final. Provider errors
    carry their own flag. Everything else (datastore down, network,
    unexpected bugs) gets another attempt until the ceiling.
    """
    if isinstance(exc, DomainError):
        return exc.status_code >= 500
    if isinstance(exc, ProviderError):
        return exc.retryable
    return True
