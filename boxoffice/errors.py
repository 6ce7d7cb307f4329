from typing import Optional


class BoxOfficeError(Exception):
    """Base class for everything the payment pipeline raises."""


class CartError(BoxOfficeError):
    """Bad cart input: quantity, unknown ticket type, sold out."""


class UnknownProvider(BoxOfficeError):
    def __init__(self, name: str) -> None:
        super().__init__(f"unknown payment provider: {name!r}")
        self.name = name


class GatewayError(BoxOfficeError):
    """The payment provider could not be reached or refused the call."""

    def __init__(self, message: str, *, provider: str = "",
                 status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class NotificationError(GatewayError):
    """A server-to-server notification failed authentication or decoding."""


class FulfillmentError(BoxOfficeError):
    def __init__(self, message: str, *, payment_id: str,
                 order_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.payment_id = payment_id
        self.order_id = order_id


class SnapshotMissing(FulfillmentError):
    """Payment succeeded but no cart snapshot survives to fulfill it."""
