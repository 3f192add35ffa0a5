# Tenant Billing Errors
# Each error carries a stable machine code and the HTTP status the API
# renders it with. Validation errors are raised before anything is written,
# so a caller that sees one can assume the ledger is unchanged.


class BillingError(Exception):
    code = "BILLING_ERROR"
    http_status = 400

    def __init__(self, message="", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self):
        err = {"code": self.code, "message": self.message}
        if self.details:
            err["details"] = self.details
        return err


class InvalidAmount(BillingError):
    code = "INVALID_AMOUNT"
    http_status = 400


class InvalidRequest(BillingError):
    code = "INVALID_REQUEST"
    http_status = 400


class InsufficientBalance(BillingError):
    code = "INSUFFICIENT_BALANCE"
    http_status = 402


class InsufficientAvailableBalance(BillingError):
    code = "INSUFFICIENT_AVAILABLE_BALANCE"
    http_status = 402


class WouldGoNegative(BillingError):
    code = "WOULD_GO_NEGATIVE"
    http_status = 400


class PricingNotConfigured(BillingError):
    code = "PRICING_NOT_CONFIGURED"
    http_status = 404


class TenantNotFound(BillingError):
    code = "TENANT_NOT_FOUND"
    http_status = 404


class InvoiceNotFound(BillingError):
    code = "INVOICE_NOT_FOUND"
    http_status = 404


class PricingNotFound(BillingError):
    code = "PRICING_NOT_FOUND"
    http_status = 404


class DuplicateInvoicePeriod(BillingError):
    code = "DUPLICATE_INVOICE_PERIOD"
    http_status = 409


class TenantLocked(BillingError):
    code = "TENANT_LOCKED"
    http_status = 403


class Forbidden(BillingError):
    code = "FORBIDDEN"
    http_status = 403
