"""Domain errors for checkout, check-in and scanning.

Everything raised before a payment is authorized carries no side effect and
is shown to the actor inline. ``CommitFailedAfterPayment`` is the only error
that needs a human: it always carries the payment reference.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Sequence


class ErrorCode(Enum):
    """Domain error codes."""

    VALIDATION = "VALIDATION"
    CHECKOUT_NOT_ALLOWED = "CHECKOUT_NOT_ALLOWED"
    CHECKOUT_IN_PROGRESS = "CHECKOUT_IN_PROGRESS"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    AUTHORIZATION_FAILED = "AUTHORIZATION_FAILED"
    COMMIT_FAILED_AFTER_PAYMENT = "COMMIT_FAILED_AFTER_PAYMENT"
    NOT_FOUND = "NOT_FOUND"
    AMBIGUOUS_MATCH = "AMBIGUOUS_MATCH"
    CAMERA_PERMISSION = "CAMERA_PERMISSION"


@dataclass(eq=False)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(DomainError):
    """Bad input; nothing has happened yet."""

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.VALIDATION, message=message)


class CheckoutNotAllowedError(DomainError):
    """Raised when the actor may not check out (auth, waiver, empty cart)."""

    def __init__(self, reason: str) -> None:
        super().__init__(code=ErrorCode.CHECKOUT_NOT_ALLOWED, message=reason)
        self.reason = reason


class CheckoutInProgressError(DomainError):
    """Raised on a second submit while an authorization is outstanding."""

    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.CHECKOUT_IN_PROGRESS,
            message="A payment for this checkout is already in progress",
        )


class CapacityExceededError(DomainError):
    """Raised when re-validation against live inventory fails."""

    def __init__(self, key: str, requested: int, available: int) -> None:
        super().__init__(
            code=ErrorCode.CAPACITY_EXCEEDED,
            message=f"Only {available} left for {key} (requested {requested})",
        )
        self.key = key
        self.requested = requested
        self.available = available


class AuthorizationFailedOrCancelled(DomainError):
    """Raised when the payment provider declines, cancels or times out."""

    def __init__(self, outcome: str) -> None:
        super().__init__(
            code=ErrorCode.AUTHORIZATION_FAILED,
            message=f"Payment {outcome}",
        )
        self.outcome = outcome


class CommitFailedAfterPayment(DomainError):
    """Payment captured but the record was not written."""

    def __init__(self, payment_reference: str, cause: str = "") -> None:
        super().__init__(
            code=ErrorCode.COMMIT_FAILED_AFTER_PAYMENT,
            message=(
                "Payment captured, booking failed - contact support "
                f"quoting payment reference {payment_reference}"
            ),
        )
        self.payment_reference = payment_reference
        self.cause = cause


class NotFoundError(DomainError):
    def __init__(self, what: str, ident: str) -> None:
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{what} not found",
        )
        self.ident = ident


class AmbiguousMatchError(DomainError):
    def __init__(self, query: str, candidates: Sequence[str]) -> None:
        super().__init__(
            code=ErrorCode.AMBIGUOUS_MATCH,
            message=f"{len(candidates)} bookings match '{query}'",
        )
        self.query = query
        self.candidates = list(candidates)


class CameraPermissionError(DomainError):
    def __init__(self, detail: str = "") -> None:
        super().__init__(
            code=ErrorCode.CAMERA_PERMISSION,
            message="Camera access denied or unavailable. "
                    "Use manual check-in instead.",
        )
        self.detail = detail
