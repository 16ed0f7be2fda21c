"""
Error taxonomy for meterly.

Services raise these; the HTTP layer maps them to status codes.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base exception for billing core errors."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(BillingError):
    """Raised when a subscription, metric, tax or override does not exist."""

    status_code = 404


class ConflictError(BillingError):
    """Raised when a uniqueness constraint would be violated."""

    status_code = 409


class BadRequestError(BillingError):
    """Raised when input is structurally valid but semantically rejected."""

    status_code = 400
