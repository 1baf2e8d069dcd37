"""Error kinds raised by the ordering core.

Every error carries a machine-readable ``kind`` and the HTTP status the API
layer answers with. ``app.py`` renders them with the usual
``{"success": false, "error": ...}`` envelope.
"""


class OrderingError(Exception):
    kind = "error"
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message=None, errors=None):
        self.message = message or self.default_message
        self.errors = list(errors or [])
        super().__init__(self.message)

    def to_dict(self):
        out = {"success": False, "kind": self.kind, "error": self.message}
        if self.errors:
            out["errors"] = [e.to_dict() if hasattr(e, "to_dict") else e for e in self.errors]
        return out


class ValidationError(OrderingError):
    kind = "validation_error"
    status_code = 422
    default_message = "Validation errors"


class InvalidQuantity(ValidationError):
    kind = "invalid_quantity"
    default_message = "Quantity must be a positive integer"


class ItemUnavailable(ValidationError):
    kind = "item_unavailable"
    default_message = "Menu item is not available"


class ItemNotFound(OrderingError):
    kind = "item_not_found"
    status_code = 404
    default_message = "Menu item not found"


class OrderNotFound(OrderingError):
    kind = "order_not_found"
    status_code = 404
    default_message = "Order not found"


class PaymentNotFound(OrderingError):
    kind = "payment_not_found"
    status_code = 404
    default_message = "Payment not found"


class Conflict(OrderingError):
    kind = "conflict"
    status_code = 409
    default_message = "Conflict"


class DuplicateTransaction(Conflict):
    kind = "duplicate_transaction"
    default_message = "Transaction already recorded"


class IllegalTransition(OrderingError):
    kind = "illegal_transition"
    status_code = 409
    default_message = "Status change not allowed"


class Forbidden(OrderingError):
    kind = "forbidden"
    status_code = 403
    default_message = "Forbidden"


class IdentifierCollision(OrderingError):
    # Never leaves OrderRepository.create_atomically: it is retried there and
    # exhaustion surfaces as ServiceUnavailable, so status_code is never rendered.
    kind = "identifier_collision"
    status_code = 409
    default_message = "Order number already in use"


class ServiceUnavailable(OrderingError):
    kind = "service_unavailable"
    status_code = 503
    default_message = "Service temporarily unavailable, please retry"


class StorageFailure(OrderingError):
    kind = "storage_failure"
    status_code = 503
    default_message = "Could not save, please retry"
