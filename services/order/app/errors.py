"""
Order Service: error kinds

Storage and transport failures are translated into these classes at the
component boundary. The HTTP layer maps each class to a status code via
``status_code`` and renders ``to_dict()`` as the response body.
"""


class OrderWorkflowError(Exception):
    status_code = 500
    code = "internal_error"
    retryable = False

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self)}


class ValidationFailed(OrderWorkflowError):
    """The request is malformed (e.g. quantity below 1, unknown status)."""

    status_code = 400
    code = "validation_error"


class InvalidReference(OrderWorkflowError):
    """A referenced customer or product does not exist."""

    status_code = 404
    code = "invalid_reference"
    kind = "entity"

    def __init__(self, ref_id: str) -> None:
        super().__init__(f"{self.kind} {ref_id!r} not found")
        self.ref_id = ref_id

    def to_dict(self) -> dict:
        return {**super().to_dict(), "reference": self.kind, "id": self.ref_id}


class CustomerNotFound(InvalidReference):
    kind = "customer"


class ProductNotFound(InvalidReference):
    kind = "product"


class InsufficientStock(OrderWorkflowError):
    status_code = 400
    code = "insufficient_stock"

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for product {product_id!r}: "
            f"requested={requested}, available={available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available

    def to_dict(self) -> dict:
        return {
            **super().to_dict(),
            "productId": self.product_id,
            "requested": self.requested,
            "available": self.available,
        }


class ConcurrentModification(OrderWorkflowError):
    """The optimistic retry budget was exhausted."""

    status_code = 409
    code = "concurrent_modification"
    retryable = True

    def __init__(self, entity: str, entity_id: str, attempts: int) -> None:
        super().__init__(
            f"{entity} {entity_id!r} kept changing underneath us "
            f"({attempts} attempts); retry the request"
        )
        self.entity = entity
        self.entity_id = entity_id
        self.attempts = attempts


class DuplicateId(OrderWorkflowError):
    code = "duplicate_id"

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} {entity_id!r} already exists")
        self.entity = entity
        self.entity_id = entity_id


class OrderNotFound(OrderWorkflowError):
    status_code = 404
    code = "order_not_found"

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id!r} not found")
        self.order_id = order_id


class StatusConflict(OrderWorkflowError):
    """The stored status no longer matches what the caller read."""

    status_code = 409
    code = "status_conflict"

    def __init__(self, order_id: str, expected, actual) -> None:
        super().__init__(
            f"Order {order_id!r} is {_name(actual)}, expected {_name(expected)}"
        )
        self.order_id = order_id
        self.expected = expected
        self.actual = actual


class InvalidTransition(OrderWorkflowError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, order_id: str, current, target) -> None:
        super().__init__(
            f"Order {order_id!r} cannot move from {_name(current)} to {_name(target)}"
        )
        self.order_id = order_id
        self.current = current
        self.target = target

    def to_dict(self) -> dict:
        return {**super().to_dict(), "from": _name(self.current), "to": _name(self.target)}


class OperationTimeout(OrderWorkflowError):
    status_code = 503
    code = "timeout"
    retryable = True

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"{operation} did not complete within {timeout:g}s")
        self.operation = operation
        self.timeout = timeout


class StorageFailure(OrderWorkflowError):
    status_code = 503
    code = "storage_unavailable"
    retryable = True

    def __init__(self, operation: str) -> None:
        super().__init__(f"Storage failure during {operation}")
        self.operation = operation


class PersistError(OrderWorkflowError):
    """The order could not be stored; the stock reservation was released."""

    code = "persist_error"

    def __init__(self, order_id: str, compensated: bool) -> None:
        note = "stock released" if compensated else "stock release FAILED"
        super().__init__(f"Order {order_id!r} could not be persisted ({note})")
        self.order_id = order_id
        self.compensated = compensated


class DeliveryFailure(OrderWorkflowError):
    """A notification could not be handed to the transport."""

    code = "delivery_failure"

    def __init__(self, channel: str, message_id: str, reason: str) -> None:
        super().__init__(f"Delivery of {message_id} to {channel} failed: {reason}")
        self.channel = channel
        self.message_id = message_id
        self.reason = reason


def _name(status) -> str:
    return getattr(status, "value", str(status))
