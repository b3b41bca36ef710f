"""Billing error taxonomy.

Each error carries the HTTP status it maps to and a client-safe payload. The
FastAPI handler registered in ``app.main`` turns any ``BillingError`` into a
JSON response; the webhook dispatcher catches them per event instead.
"""

from typing import Any


class BillingError(Exception):
    """Base class for billing failures that map onto an HTTP status."""

    status_code: int = 500
    code: str = "billing_error"

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_response(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class ValidationError(BillingError):
    """Bad or missing request fields."""

    status_code = 400
    code = "validation_error"


class InvalidTierError(ValidationError):
    """The (tier, billing cycle) pair has no configured Stripe price."""

    code = "invalid_tier"

    def __init__(self, tier: str, billing_cycle: str) -> None:
        super().__init__(
            f"Invalid tier or billing cycle, or price ID not configured: {tier}/{billing_cycle}"
        )
        self.tier = tier
        self.billing_cycle = billing_cycle


class NotFoundError(BillingError):
    """Unknown user, or a Stripe id that resolves to no local record."""

    status_code = 404
    code = "not_found"


class VerificationError(BillingError):
    """Webhook signature or payload could not be verified."""

    status_code = 400
    code = "invalid_signature"


class ConflictError(BillingError):
    """A write that would regress ordering-protected fields."""

    status_code = 409
    code = "conflict"


class UpstreamError(BillingError):
    """Stripe was unreachable or answered with an error.

    ``diagnostic`` keeps Stripe's message and request id for operators; it is
    logged but never returned to the client.
    """

    status_code = 502
    code = "upstream_error"

    def __init__(
        self,
        operation: str,
        *,
        upstream_code: str | None = None,
        http_status: int | None = None,
        request_id: str | None = None,
        diagnostic: str | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(f"Payment processor request failed ({operation})")
        self.operation = operation
        self.upstream_code = upstream_code
        self.http_status = http_status
        self.request_id = request_id
        self.diagnostic = diagnostic
        self.retryable = retryable
        if retryable:
            self.status_code = 503

    def to_response(self) -> dict[str, Any]:
        return {
            "detail": self.message,
            "code": self.code,
            "upstream_code": self.upstream_code,
            "retryable": self.retryable,
        }
