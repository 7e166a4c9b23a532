class BillingError(Exception):
    """Base for every typed error the billing core raises."""

    status_code = 400
    code = "billing_error"

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail or self.__class__.__name__


class UnauthorizedError(BillingError):
    status_code = 401
    code = "unauthorized"


class ForbiddenError(BillingError):
    status_code = 403
    code = "forbidden"


class ValidationError(BillingError):
    status_code = 422
    code = "validation_error"


class UnbalancedTransactionError(ValidationError):
    code = "unbalanced_transaction"


class NotFoundError(BillingError):
    status_code = 404
    code = "not_found"


class StateConflictError(BillingError):
    status_code = 409
    code = "state_conflict"


class UpstreamFailure(BillingError):
    """A follow-up call failed after the ledger write was committed."""

    status_code = 502
    code = "upstream_failure"
