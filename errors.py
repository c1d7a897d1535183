"""
Domain errors raised by the marketplace services.

Each error knows the HTTP status it maps to and any extra detail the caller
needs to correct the request (offending fields, valid values, current price).
main.py renders them as JSON.
"""
from typing import Any, Dict, Iterable, List, Optional


class MarketplaceError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def extra(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, **self.extra()}


class NotFound(MarketplaceError):
    status_code = 404


class ValidationFailed(MarketplaceError):
    def __init__(self, fields: Iterable[str], message: Optional[str] = None):
        self.fields: List[str] = list(fields)
        super().__init__(message or f"Missing or invalid fields: {', '.join(self.fields)}")

    def extra(self) -> Dict[str, Any]:
        return {"fields": self.fields}


class _NotInSet(MarketplaceError):
    label = "value"

    def __init__(self, value: Any, valid_values: Iterable[str]):
        self.value = value
        self.valid_values: List[str] = list(valid_values)
        super().__init__(f"Invalid {self.label}. Must be one of: {', '.join(self.valid_values)}")

    def extra(self) -> Dict[str, Any]:
        return {"valid_values": self.valid_values}


class InvalidStatus(_NotInSet):
    label = "status value"


class InvalidBuyType(_NotInSet):
    label = "buy type"


class InvalidCategory(_NotInSet):
    label = "category"


class InvalidStatusTransition(InvalidStatus):
    def __init__(self, current: str, target: str, valid_values: Iterable[str]):
        super().__init__(target, valid_values)
        self.current = current
        self.message = f"Cannot move order from {current} to {target}"
        self.args = (self.message,)

    def extra(self) -> Dict[str, Any]:
        return {"current_status": self.current, "valid_values": self.valid_values}


class AuctionInactive(MarketplaceError):
    def __init__(self, message: str = "Auction is not currently active."):
        super().__init__(message)


class BidTooLow(MarketplaceError):
    def __init__(self, current_price: float):
        self.current_price = current_price
        super().__init__(f"Bid must be higher than the current price of {current_price}.")

    def extra(self) -> Dict[str, Any]:
        return {"current_price": self.current_price}


class ConcurrentUpdate(MarketplaceError):
    status_code = 409

    def __init__(self, message: str = "The record changed while it was being updated. Please retry."):
        super().__init__(message)


class NotificationFailure(MarketplaceError):
    """Raised inside the notification task only; it is logged and never reaches a caller."""
