from __future__ import annotations


class OrderFlowError(Exception):
    """Base for every rejection the order core hands back to the caller."""

    code = "ORDER_FLOW_ERROR"
    http_status = 400
    default_message = "Request rejected"

    def __init__(self, message: str = "", **context):
        self.message = (message or self.default_message).strip()
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.http_status),
        }
        if self.context:
            payload["context"] = {k: v for k, v in self.context.items() if v is not None}
        return payload


class InvalidActorError(OrderFlowError):
    code = "INVALID_ACTOR"
    http_status = 403
    default_message = "You are not a party to this order"


class UnauthorizedActorError(InvalidActorError):
    code = "UNAUTHORIZED_ACTOR"
    default_message = "This action belongs to the other party"


class IllegalTransitionError(OrderFlowError):
    code = "ILLEGAL_TRANSITION"
    http_status = 409
    default_message = "Order status does not allow this action"


class NoActiveOfferError(OrderFlowError):
    code = "NO_ACTIVE_OFFER"
    http_status = 409
    default_message = "There is no outstanding offer on this order"


class SelfAcceptError(OrderFlowError):
    code = "SELF_ACCEPT"
    http_status = 409
    default_message = "You cannot accept your own offer"


class InvalidCodeError(OrderFlowError):
    code = "INVALID_CODE"
    http_status = 400
    default_message = "Handover code is invalid or already used"


class PaymentNotConfirmedError(OrderFlowError):
    code = "PAYMENT_NOT_CONFIRMED"
    http_status = 402
    default_message = "Payment has not been confirmed"


class PaymentUnavailableError(OrderFlowError):
    code = "PAYMENT_UNAVAILABLE"
    http_status = 503
    default_message = "Payment unavailable, try again"


class ConcurrentModificationError(OrderFlowError):
    code = "CONCURRENT_MODIFICATION"
    http_status = 409
    default_message = "Order changed while you were acting on it, refresh and retry"


class InvalidAmountError(OrderFlowError):
    code = "INVALID_AMOUNT"
    http_status = 400
    default_message = "Amount must be greater than zero and within limits"


class ListingUnavailableError(OrderFlowError):
    code = "LISTING_UNAVAILABLE"
    http_status = 409
    default_message = "Listing is not available"


class OrderNotFoundError(OrderFlowError):
    code = "ORDER_NOT_FOUND"
    http_status = 404
    default_message = "Order not found"


class InvalidQuantityError(InvalidAmountError):
    code = "INVALID_QUANTITY"
    default_message = "Quantity must be between 1 and 1000"
