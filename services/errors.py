import functools
import sqlite3


class AllocationError(Exception):
    """Base error for allocation and truck-inventory operations."""

    status_code = 500

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self):
        payload = {"error": self.message}
        payload.update(self.details)
        return payload


class NotFoundError(AllocationError):
    status_code = 404


class InvalidRequestError(AllocationError):
    status_code = 400


class InsufficientStockError(InvalidRequestError):
    def __init__(self, available_qty, requested_qty):
        shortfall = requested_qty - available_qty
        super().__init__(
            "Insufficient available stock on truck. "
            f"Available: {available_qty}, Requested: {requested_qty}, Short: {shortfall}",
            details={
                "available_qty": available_qty,
                "requested_qty": requested_qty,
                "shortfall": shortfall,
            },
        )
        self.available_qty = available_qty
        self.requested_qty = requested_qty
        self.shortfall = shortfall


class StorageFaultError(AllocationError):
    status_code = 500


def translate_storage_errors(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except sqlite3.Error as exc:
            raise StorageFaultError(f"Storage failure in {func.__name__}: {exc}") from exc

    return wrapper
