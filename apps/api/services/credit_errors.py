"""
Structured error classes for the credit ledger and entitlement checks.
"""

from typing import Optional

from fastapi import status


class LedgerError(Exception):
    """Base exception for ledger errors surfaced to API callers."""

    error_code = "ledger_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class PolicyNotFoundError(LedgerError):
    """A feature key has no registered policy. Configuration bug, never retried."""

    error_code = "policy_not_found"

    def __init__(self, feature_key: str):
        self.feature_key = feature_key
        super().__init__(f"No access policy registered for feature '{feature_key}'")

    def to_dict(self) -> dict:
        return {**super().to_dict(), "feature": self.feature_key}


class UserNotFoundError(LedgerError):
    error_code = "user_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User '{user_id}' not found")


class InsufficientCreditsError(LedgerError):
    """
    Expected business outcome: the balance does not cover the requested spend.

    Carries a purchase redirect hint when the request came through a feature.
    """

    error_code = "insufficient_credits"
    http_status = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(
        self,
        user_id: str,
        credit_type: str,
        required: int,
        available: int,
        feature_key: Optional[str] = None,
        redirect_hint: Optional[str] = None,
    ):
        self.user_id = user_id
        self.credit_type = credit_type
        self.required = required
        self.available = available
        self.feature_key = feature_key
        self.redirect_hint = redirect_hint
        super().__init__(
            f"Insufficient {credit_type} credits. Required: {required}, available: {available}."
        )

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "credit_type": self.credit_type,
            "required": self.required,
            "available": self.available,
            "feature": self.feature_key,
            "redirect_hint": self.redirect_hint,
        }


class RevokeWouldUnderflowError(LedgerError):
    error_code = "revoke_would_underflow"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, user_id: str, credit_type: str, requested: int, available: int):
        self.user_id = user_id
        self.credit_type = credit_type
        self.requested = requested
        self.available = available
        super().__init__(
            f"Cannot revoke {requested} {credit_type} credits; balance is {available}."
        )

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "credit_type": self.credit_type,
            "requested": self.requested,
            "available": self.available,
        }


class AdjustmentNotRefundableError(LedgerError):
    error_code = "adjustment_not_refundable"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, adjustment_id: str, reason: str):
        self.adjustment_id = adjustment_id
        super().__init__(f"Adjustment '{adjustment_id}' cannot be refunded: {reason}")


class IdempotencyKeyConflictError(LedgerError):
    """An idempotency key was reused for a different spend."""

    error_code = "idempotency_key_conflict"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, idempotency_key: str, adjustment_id: str):
        self.idempotency_key = idempotency_key
        self.adjustment_id = adjustment_id
        super().__init__(
            f"Idempotency key '{idempotency_key}' was already used for a different spend."
        )

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "idempotency_key": self.idempotency_key,
            "adjustment_id": self.adjustment_id,
        }


class TransientStorageConflictError(LedgerError):
    """Storage kept conflicting after the bounded retry budget. Safe for the caller to retry."""

    error_code = "storage_conflict"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, operation: str, attempts: int):
        self.operation = operation
        self.attempts = attempts
        super().__init__(f"{operation} could not commit after {attempts} attempts. Retry shortly.")
