from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base error for tenancy, authorization and pipeline failures.

    Every subclass carries a stable machine-readable ``code`` and the HTTP status the API
    layer maps it to. ``details`` is optional structured context for the caller.
    """

    code = "crm_error"
    status_code = 500

    def __init__(self, message: str, *, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class UnauthorizedError(CRMError):
    """Raised when no valid principal is attached to the request."""

    code = "unauthorized"
    status_code = 401


class ForbiddenError(CRMError):
    """Raised when the principal's role or sub-account does not permit the operation."""

    code = "forbidden"
    status_code = 403


class NotFoundError(CRMError):
    """Raised for absent resources and for resources owned by another tenant."""

    code = "not_found"
    status_code = 404


class ValidationError(CRMError):
    code = "validation_error"
    status_code = 422


class ConflictError(CRMError):
    """Raised for duplicate leads, stale stage moves and duplicate default pipelines."""

    code = "conflict"
    status_code = 409

    def __init__(self, message: str, *, conflicting_ids: list[str] | None = None, details: Any = None) -> None:
        self.conflicting_ids = sorted(set(conflicting_ids or []))
        if details is None and self.conflicting_ids:
            details = {"conflicting_ids": self.conflicting_ids}
        super().__init__(message, details=details)


class StorageError(CRMError):
    code = "storage_error"
    status_code = 503
