# vps_autoscaler/core/errors.py

from typing import Iterable, Optional


# -----------------------------
# Base Errors
# -----------------------------

class AutoscalerError(Exception):
    """Base class for all autoscaler errors."""
    pass


# -----------------------------
# Validation / Domain Errors
# -----------------------------

class ValidationError(AutoscalerError):
    """Rejected NodeGroup configuration. Never retried automatically."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class InvalidPhaseTransition(AutoscalerError):
    """Illegal node phase transition attempted."""
    pass


class LifecycleError(AutoscalerError):
    pass


class DrainError(LifecycleError):
    """Drain blocked or failed (eviction refused, timeout)."""
    pass


# -----------------------------
# Provider Errors
# -----------------------------

class ProviderError(AutoscalerError):
    """Non-retryable provider failure."""
    pass


class TransientProviderError(ProviderError):
    """Retryable provider failure (network, 5xx, rate limiting)."""
    pass


class ProviderAPIError(ProviderError):
    """HTTP error returned by the VPS provider API."""

    def __init__(self, status_code: int, message: str, details: str = "", request_id: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.details = details
        self.request_id = request_id
        if request_id:
            text = f"provider API error (status: {status_code}, request_id: {request_id}): {message} - {details}"
        else:
            text = f"provider API error (status: {status_code}): {message} - {details}"
        super().__init__(text)

    def is_not_found(self) -> bool:
        return self.status_code == 404

    def is_unauthorized(self) -> bool:
        return self.status_code == 401

    def is_forbidden(self) -> bool:
        return self.status_code == 403

    def is_rate_limited(self) -> bool:
        return self.status_code == 429

    def is_server_error(self) -> bool:
        return 500 <= self.status_code < 600

    def is_transient(self) -> bool:
        return self.is_rate_limited() or self.is_server_error()


class QuotaExceededError(ProviderError):
    pass


class OfferingUnavailableError(ProviderError):
    pass


# -----------------------------
# Safety / Rebalance Errors
# -----------------------------

class SafetyGateError(AutoscalerError):
    """One or more safety checks failed; the operation is blocked."""

    def __init__(self, message: str, checks: Optional[Iterable] = None):
        self.checks = list(checks or [])
        super().__init__(message)


class PlanningError(AutoscalerError):
    pass


class RollbackError(AutoscalerError):
    """Rollback could not be completed. Carries the sub-step that failed."""

    def __init__(self, message: str, step: Optional[str] = None):
        self.step = step
        super().__init__(message)


class RebalanceInProgressError(AutoscalerError):
    """A non-terminal rebalance execution already exists for the group."""
    pass


# -----------------------------
# Lease Errors
# -----------------------------

class LeaseError(AutoscalerError):
    """Lease missing, expired, or held by another identity."""
    pass


# -----------------------------
# Persistence Errors
# -----------------------------

class PersistenceError(AutoscalerError):
    pass


class AlreadyExistsError(PersistenceError):
    pass


class NotFoundError(PersistenceError):
    pass


class ConcurrencyError(PersistenceError):
    """Record was modified by another writer since it was read."""
    pass
