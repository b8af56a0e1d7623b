# errors.py
# ============================================================================
# TRUCKSY PAYMENTS — ERROR TAXONOMY
# ============================================================================
# validation       bad input, unknown ids
# business_rule    closed truck, unavailable item, funds, illegal transition
# consistency      callback claims disagree with the gateway's own record
# external_dependency  gateway unreachable or answering garbage
# ============================================================================


class TrucksyError(Exception):
    """Base class for every failure surfaced to a caller."""

    kind = "internal"
    http_status = 500
    default_code = "ERROR"

    def __init__(self, message: str, code: str = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict:
        return {"message": self.message, "code": self.code, "kind": self.kind}


# --- validation ---

class InvalidRequestError(TrucksyError):
    kind = "validation"
    http_status = 400
    default_code = "INVALID_REQUEST"


class NotFoundError(InvalidRequestError):
    http_status = 404
    default_code = "NOT_FOUND"


# --- business rules ---

class BusinessRuleError(TrucksyError):
    kind = "business_rule"
    http_status = 409
    default_code = "BUSINESS_RULE"


class TruckClosedError(BusinessRuleError):
    default_code = "TRUCK_CLOSED"


class ItemUnavailableError(BusinessRuleError):
    default_code = "ITEM_UNAVAILABLE"


class MissingPaymentInstrumentError(BusinessRuleError):
    default_code = "NO_BANK_CARD"


class InsufficientFundsError(BusinessRuleError):
    default_code = "INSUFFICIENT_FUNDS"


class SubscriptionActiveError(BusinessRuleError):
    default_code = "SUBSCRIPTION_ACTIVE"


class InvalidTransitionError(BusinessRuleError):
    default_code = "INVALID_TRANSITION"


class ForbiddenError(BusinessRuleError):
    http_status = 403
    default_code = "FORBIDDEN"


# --- callback consistency ---

class ConsistencyError(TrucksyError):
    kind = "consistency"
    http_status = 400
    default_code = "INCONSISTENT_CALLBACK"


class StatusMismatchError(ConsistencyError):
    default_code = "STATUS_MISMATCH"


class AmountMismatchError(ConsistencyError):
    default_code = "AMOUNT_MISMATCH"


class PaymentNotPaidError(ConsistencyError):
    default_code = "NOT_PAID"


class PaymentMismatchError(ConsistencyError):
    default_code = "PAYMENT_MISMATCH"


# --- external dependencies ---

class GatewayError(TrucksyError):
    kind = "external_dependency"
    http_status = 502
    default_code = "GATEWAY_ERROR"
