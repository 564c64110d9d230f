# Meterwise Errors
# Structured failure taxonomy. Every error carries a stable code that the
# API surfaces verbatim so AI collaborators can branch on it.


class BillingError(Exception):
    """Base class for every billing failure surfaced to callers."""

    code = "billing_error"
    http_status = 400

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(BillingError):
    code = "validation_error"
    http_status = 422


class InvalidQuantity(ValidationError):
    code = "invalid_quantity"


class SpendCapExceeded(BillingError):
    """Hard stop: callers must not retry without company action."""

    code = "spend_cap_exceeded"
    http_status = 402


class BillingBlocked(BillingError):
    """Company is past_due or suspended; no new usage may be debited."""

    code = "billing_blocked"
    http_status = 402


class PricingUnavailable(BillingError):
    code = "pricing_unavailable"
    http_status = 503


class CompanyNotFound(BillingError):
    code = "company_not_found"
    http_status = 404


class ConcurrencyConflict(BillingError):
    """Ledger lock could not be obtained. Safe to retry with the same idempotency key."""

    code = "concurrency_conflict"
    http_status = 409


class LookupTimeout(BillingError):
    code = "lookup_timeout"
    http_status = 503


class RechargeFailed(BillingError):
    code = "recharge_failed"
    http_status = 402


class InvoiceNotFound(BillingError):
    code = "invoice_not_found"
    http_status = 404


class InvalidInvoiceTransition(BillingError):
    code = "invalid_invoice_transition"
    http_status = 409
