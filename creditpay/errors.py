"""
Error taxonomy.

Every error raised across the service boundary derives from CreditPayError and
knows its HTTP status and a JSON-safe payload, so the API layer can map them
without inspecting messages.
"""

from __future__ import annotations

from typing import Any, Optional


class CreditPayError(Exception):
    """Base class for request-scoped errors."""

    http_status = 500
    code = "internal_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.details}


class ConfigurationError(CreditPayError):
    """Invalid secrets, keys or chain configuration. Not retryable."""

    code = "configuration_error"


# Validation


class ValidationError(CreditPayError):
    http_status = 400
    code = "validation_error"


class InvalidChainError(ValidationError):
    code = "invalid_chain"

    def __init__(self, chain: str, valid_chains: list[str]):
        super().__init__(f"Unsupported chain: {chain}", chain=chain, valid_chains=valid_chains)


class InvalidTierError(ValidationError):
    code = "invalid_amount"

    def __init__(self, credits: Any, valid_amounts: list[int]):
        super().__init__(
            "Invalid credit amount. Must be one of: " + ", ".join(str(v) for v in valid_amounts),
            credits=credits,
            valid_amounts=valid_amounts,
        )


# Authorization


class AuthorizationError(CreditPayError):
    http_status = 401
    code = "unauthorized"


class ForbiddenError(AuthorizationError):
    http_status = 403
    code = "forbidden"


# Not found


class NotFoundError(CreditPayError):
    http_status = 404
    code = "not_found"


class PaymentNotFoundError(NotFoundError):
    def __init__(self, payment_token: str):
        super().__init__("Payment token not found")


class HoldNotFoundError(NotFoundError):
    def __init__(self, hold_id: str):
        super().__init__("Hold not found", hold_id=hold_id)


class AccountNotFoundError(NotFoundError):
    def __init__(self, account_id: str):
        super().__init__("Account not found", account_id=account_id)


# Conflict


class ConflictError(CreditPayError):
    http_status = 409
    code = "conflict"


class AlreadyClaimedError(ConflictError):
    code = "already_claimed"

    def __init__(self, payment_token: str, claimed_at: Optional[str] = None):
        super().__init__(
            "Credits already claimed for this payment",
            status="claimed",
            claimed_at=claimed_at,
        )


class HoldStateError(ConflictError):
    code = "hold_not_held"

    def __init__(self, hold_id: str, status: str):
        super().__init__(f"Hold already {status}", hold_id=hold_id, status=status)
        self.status = status


# Payment required


class InsufficientBalanceError(CreditPayError):
    http_status = 402
    code = "insufficient_balance"

    def __init__(self, required: Any, available: Any):
        super().__init__(
            f"Need {required} credits but only have {available} credits",
            credits_required=required,
            credits_available=available,
        )
        self.required = required
        self.available = available


class PaymentNotConfirmedError(CreditPayError):
    http_status = 402
    code = "payment_not_confirmed"

    def __init__(self, chain: str, status: str, confirmations: int):
        super().__init__(
            "Payment not yet confirmed",
            blockchain=chain,
            status=status,
            confirmations=confirmations,
        )


# Upstream


class ProviderUnavailableError(CreditPayError):
    """A chain-data provider failed or timed out. Retry later; never means unpaid."""

    http_status = 503
    code = "verification_unavailable"

    def __init__(self, provider: str, reason: str):
        super().__init__(f"{provider} unavailable: {reason}", provider=provider, retryable=True)
        self.provider = provider
