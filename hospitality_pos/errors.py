from __future__ import annotations


class NotFoundError(ValueError):
    pass


class OrderStateError(ValueError):
    pass


class DiscountError(ValueError):
    pass


class PaymentError(ValueError):
    pass


class InsufficientStockError(ValueError):
    def __init__(self, message: str, *, available: int, required: int) -> None:
        super().__init__(message)
        self.available = available
        self.required = required


class TransferError(ValueError):
    pass
