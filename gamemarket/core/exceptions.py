from fastapi import HTTPException, status


class MarketplaceError(HTTPException):
    """Base for client-visible domain errors.

    The response body is ``{"detail": {"code": <stable code>, "message": <text>}}``.
    """

    code = "error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        self.message = message
        super().__init__(
            status_code=type(self).status_code,
            detail={"code": self.code, "message": message},
        )


class NotFoundError(MarketplaceError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(MarketplaceError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(MarketplaceError):
    code = "conflict"
    status_code = status.HTTP_409_CONFLICT


class InvalidArgumentError(MarketplaceError):
    code = "invalid_argument"
    status_code = status.HTTP_400_BAD_REQUEST


class PreconditionFailedError(MarketplaceError):
    code = "precondition_failed"
    status_code = status.HTTP_412_PRECONDITION_FAILED


class PaymentGatewayError(MarketplaceError):
    code = "gateway_error"
    status_code = status.HTTP_502_BAD_GATEWAY


class CallbackValidationError(MarketplaceError):
    code = "validation_failed"
    status_code = status.HTTP_400_BAD_REQUEST


class UnauthorizedError(MarketplaceError):
    code = "unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Invalid or missing authentication"):
        super().__init__(message)


class ListingNotFoundError(NotFoundError):
    def __init__(self, listing_id: str):
        super().__init__(f"Listing {listing_id} not found")


class OfferNotFoundError(NotFoundError):
    def __init__(self, offer_id: str):
        super().__init__(f"Offer {offer_id} not found")


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id: str):
        super().__init__(f"Order {order_id} not found")


class PaymentNotFoundError(NotFoundError):
    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} not found")


class NotificationNotFoundError(NotFoundError):
    def __init__(self, notification_id: str):
        super().__init__(f"Notification {notification_id} not found")


class ListingSoldError(ConflictError):
    def __init__(self):
        super().__init__("This account has already been sold")


class InvalidOrderTransitionError(ConflictError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Order is '{current}', cannot move to '{requested}'")
