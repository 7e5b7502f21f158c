"""Error taxonomy for the checkout and settlement services.

Services raise these; the app-level error handler renders them as
``{"success": false, "message": ...}`` with the class's status code.
"""


class PopstoreError(Exception):
    """Base class. Subclasses set status_code and a default message."""

    status_code = 500
    message = "Internal server error"

    def __init__(self, message=None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class ValidationError(PopstoreError):
    status_code = 400
    message = "Invalid request"


class NotFound(PopstoreError):
    status_code = 404
    message = "Not found"


class StoreInactive(PopstoreError):
    status_code = 404
    message = "Store not found or inactive"


class StoreExpired(StoreInactive):
    status_code = 400
    message = "Store has expired"


class PayoutNotConfigured(PopstoreError):
    status_code = 400
    message = "Store owner Stripe account not set up"


class Conflict(PopstoreError):
    status_code = 409
    message = "Conflict"


class UpstreamFailure(PopstoreError):
    status_code = 502
    message = "Payment processor request failed"


class InvalidSignature(PopstoreError):
    status_code = 400
    message = "Invalid signature"
