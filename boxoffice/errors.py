"""Error taxonomy for checkout, reconciliation and check-in.

Every error carries a stable `code` and a user-safe `message`. The HTTP layer
maps `status_code` straight into the response; details that must not reach
end users (gateway payloads, tracebacks) only ever go to the log.
"""
from typing import Any, Dict, Optional


class BoxOfficeError(Exception):
    code = "ERROR"
    status_code = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message}


class ValidationError(BoxOfficeError):
    code = "ValidationError"
    status_code = 400


class InvalidSignatureError(ValidationError):
    code = "InvalidSignature"


class NotFoundError(BoxOfficeError):
    code = "NotFound"
    status_code = 404


class InvalidTicketError(NotFoundError):
    code = "InvalidTicket"

    def __init__(self, message: str = "Invalid ticket.") -> None:
        super().__init__(message)


class SoldOutError(BoxOfficeError):
    code = "SoldOut"
    status_code = 409


class AuthenticationRequiredError(BoxOfficeError):
    code = "AuthenticationRequired"
    status_code = 401


class PermissionDeniedError(BoxOfficeError):
    code = "PermissionDenied"
    status_code = 403


class GatewayError(BoxOfficeError):
    code = "GatewayError"
    status_code = 502

    def __init__(
        self,
        message: str = "Payment provider unavailable, please try again.",
    ) -> None:
        super().__init__(message)


# Raised inside the reconciliation transaction. Each aborts the whole
# materialization; the order then settles as FAILED.
class CapacityExceededError(BoxOfficeError):
    code = "CapacityExceeded"
    status_code = 409
    reason = "capacity_exceeded"

    def __init__(self, tier_id: str) -> None:
        super().__init__("Not enough tickets left for this tier.")
        self.tier_id = tier_id


class PromoExhaustedError(BoxOfficeError):
    code = "PromoExhausted"
    status_code = 409
    reason = "promo_exhausted"

    def __init__(self, code: str) -> None:
        super().__init__("Promo code is no longer available.")
        self.promo_code = code


class EmptyOrderError(BoxOfficeError):
    code = "EmptyOrder"
    status_code = 409
    reason = "no_items"

    def __init__(self, transaction_id: str) -> None:
        super().__init__("Order has no line items.")
        self.transaction_id = transaction_id


class AlreadyProcessedError(BoxOfficeError):
    """Idempotent replay of an order that already reached a final state."""

    code = "AlreadyProcessed"
    status_code = 200

    def __init__(self, transaction_id: str, status: str) -> None:
        super().__init__("Order already processed.")
        self.transaction_id = transaction_id
        self.status = status


class AlreadyCheckedInError(BoxOfficeError):
    code = "AlreadyCheckedIn"
    status_code = 409

    def __init__(self, ticket: Optional[Dict[str, Any]] = None) -> None:
        super().__init__("Ticket has already been checked in.")
        self.ticket = ticket

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        if self.ticket is not None:
            out.update(self.ticket)
        return out
