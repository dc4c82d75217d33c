from typing import TypeVar, Tuple, Optional

T = TypeVar("T")
E = TypeVar("E", bound=Exception)

Result = Tuple[T, Optional[E]]


class OrderSagaError(Exception):
    """Base class for every error the services raise or return."""
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(OrderSagaError):
    status_code = 400


class NotFoundError(OrderSagaError):
    status_code = 404


class OrderNotFoundError(NotFoundError):
    pass


class ProductNotFoundError(NotFoundError):
    pass


class PromotionNotFoundError(NotFoundError):
    pass


class StatusConflictError(OrderSagaError):
    status_code = 409

    def __init__(self, message: str = "", current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status


class PersistenceError(OrderSagaError):
    status_code = 500


class MessagingError(OrderSagaError):
    # never mapped to an HTTP response
    status_code = 500


class ProcessingError(OrderSagaError):
    def __init__(self, message: str = "", order_id: str | None = None):
        super().__init__(message)
        self.order_id = order_id


def error_body(err: Exception) -> dict:
    message = err.message if isinstance(err, OrderSagaError) else str(err)
    return {"success": False, "message": message}


def status_code_of(err: Exception) -> int:
    return err.status_code if isinstance(err, OrderSagaError) else 500
