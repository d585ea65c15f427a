# Overview: Domain error taxonomy for stock operations, reservations, and validation.

from __future__ import annotations


class StockError(Exception):
    """Base class for stock-layer failures; details are safe to return to API callers."""

    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class NotFoundError(StockError):
    """Product, batch, reservation, or operation does not exist."""

    http_status = 404


class InactiveEntityError(StockError):
    """Product or batch has been soft-deleted."""


class InsufficientStockError(StockError):
    http_status = 409

    def __init__(
        self,
        *,
        available: int,
        required: int,
        product_id: int | None = None,
        batch_id: int | None = None,
        message: str | None = None,
    ):
        if message is None:
            scope = "batch quantity" if batch_id is not None else "stock"
            message = f"Insufficient {scope}. Available: {available}, Required: {required}"
        super().__init__(
            message,
            details={
                "product_id": product_id,
                "batch_id": batch_id,
                "available": available,
                "required": required,
            },
        )
        self.available = available
        self.required = required
        self.product_id = product_id
        self.batch_id = batch_id


class StockValidationError(StockError):
    """Aggregate of human-readable validation failures."""

    def __init__(self, errors: list[str], warnings: list[str] | None = None):
        super().__init__(
            f"Stock validation failed: {', '.join(errors)}",
            details={"errors": list(errors), "warnings": list(warnings or [])},
        )
        self.errors = list(errors)
        self.warnings = list(warnings or [])


class UnsupportedOperationError(StockError):
    pass


class ExpiredBatchError(StockValidationError):
    """Validation failed and the targeted batch is past its expiry date."""
