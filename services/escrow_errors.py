"""
Escrow error taxonomy

Every domain failure raised by the hold, dispute and release services derives
from EscrowError. Only PaymentRailError is retryable; the release sweep picks
those holds up again on its next pass.
"""

from typing import Optional


class EscrowError(Exception):
    """Base exception for escrow operations"""

    default_code = "escrow_error"
    is_retryable = False

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "retryable": self.is_retryable,
        }


class ValidationError(EscrowError):
    """Malformed input; surfaced to the caller, never retried"""
    default_code = "validation_error"


class NotFoundError(EscrowError):
    """Unknown hold or dispute id"""
    default_code = "not_found"


class StateConflictError(EscrowError):
    """Illegal state transition; state is left unchanged"""
    default_code = "state_conflict"

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(message, error_code)
        self.current_status = current_status


class AuthorizationError(EscrowError):
    """Wrong actor for the operation"""
    default_code = "not_authorized"


class PaymentRailError(EscrowError):
    """Transfer call failed or timed out"""
    default_code = "payment_rail_error"
    is_retryable = True


class AmountTooSmallError(EscrowError):
    """Flat fee is not smaller than the gross amount"""
    default_code = "amount_too_small"
