"""Exception taxonomy for the trial quota engine."""

from __future__ import annotations

from typing import Any, Dict, Optional


class TrialError(RuntimeError):
    """Base class carrying a stable error code for API responses."""

    default_code = "trial.error"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class TrialValidationError(TrialError):
    """Raised for malformed input (missing fingerprint, unknown action)."""

    default_code = "trial.invalid_request"


class QuotaExhausted(TrialError):
    """Expected business state: the ledger cannot cover the action weight."""

    default_code = "trial.exhausted"


class TrialBlocked(TrialError):
    """The fingerprint tripped anti-fraud checks and needs authentication."""

    default_code = "trial.blocked"


class RateLimited(TrialError):
    """Consumption burst rejected before any weight logic ran."""

    default_code = "trial.rate_limited"

    def __init__(self, message: str, *, retry_after: int, code: Optional[str] = None) -> None:
        super().__init__(message, code=code)
        self.retry_after = retry_after

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        detail["retryAfter"] = self.retry_after
        return detail


class TransientStoreFailure(TrialError):
    """Raised when a store call failed in a way worth retrying."""

    default_code = "trial.store_unavailable"


class PermanentStoreFailure(TrialError):
    """Raised once retries are exhausted; callers must fail closed."""

    default_code = "trial.store_failed"


class LedgerVersionConflict(TrialError):
    """Optimistic version check failed; the caller reloads and retries."""

    default_code = "trial.version_conflict"


__all__ = [
    "LedgerVersionConflict",
    "PermanentStoreFailure",
    "QuotaExhausted",
    "RateLimited",
    "TransientStoreFailure",
    "TrialBlocked",
    "TrialError",
    "TrialValidationError",
]
