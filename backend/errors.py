"""Structured errors raised by the store workflows.

Every error carries a stable ``code`` for clients, a human readable
``detail`` and an HTTP status that the app's exception handler uses
when rendering it.
"""
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError


class FulfillmentError(Exception):
    code = "error"
    status_code = 400

    def __init__(self, detail: Optional[str] = None, **extra: Any):
        self.detail = detail or self.code.replace("_", " ")
        self.extra = extra
        super().__init__(self.detail)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.detail, **self.extra}


class EmptyCart(FulfillmentError):
    code = "empty_cart"

class InvalidItem(FulfillmentError):
    code = "invalid_item"

class InvalidStatus(FulfillmentError):
    code = "invalid_status"

class InvalidTransition(FulfillmentError):
    code = "invalid_transition"
    status_code = 409

class ItemNotFound(FulfillmentError):
    code = "item_not_found"
    status_code = 404

class CustomerNotFound(FulfillmentError):
    code = "customer_not_found"
    status_code = 404

class OrderNotFound(FulfillmentError):
    code = "order_not_found"
    status_code = 404

class SupplierNotFound(FulfillmentError):
    code = "supplier_not_found"
    status_code = 404

class SupplierOrderNotFound(FulfillmentError):
    code = "supplier_order_not_found"
    status_code = 404

class Forbidden(FulfillmentError):
    code = "forbidden"
    status_code = 403

class InsufficientStock(FulfillmentError):
    code = "insufficient_stock"
    status_code = 409

    def __init__(self, title: str, available: int, book_id: Optional[int] = None):
        super().__init__(
            f"Insufficient stock for {title}. Only {available} left.",
            book_id=book_id,
            title=title,
            available=available,
        )


class ConstraintViolation(FulfillmentError):
    code = "constraint_violation"
    status_code = 409

    def __init__(self, kind: str, detail: Optional[str] = None):
        if kind in ("check", "not_null"):
            self.status_code = 400
        super().__init__(detail or f"{kind.replace('_', ' ')} constraint violated", kind=kind)


_SQLITE_KINDS = {
    "SQLITE_CONSTRAINT_UNIQUE": "unique",
    "SQLITE_CONSTRAINT_PRIMARYKEY": "unique",
    "SQLITE_CONSTRAINT_FOREIGNKEY": "foreign_key",
    "SQLITE_CONSTRAINT_CHECK": "check",
    "SQLITE_CONSTRAINT_NOTNULL": "not_null",
}

# SQLSTATE class 23, integrity constraint violation
_SQLSTATE_KINDS = {
    "23505": "unique",
    "23503": "foreign_key",
    "23514": "check",
    "23502": "not_null",
}


def constraint_kind(exc: Exception) -> str:
    """Classify an integrity failure from the driver's error code."""
    orig = getattr(exc, "orig", exc)
    name = getattr(orig, "sqlite_errorname", None)
    if name in _SQLITE_KINDS:
        return _SQLITE_KINDS[name]
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    return _SQLSTATE_KINDS.get(sqlstate, "integrity")

def from_integrity_error(exc: IntegrityError, detail: Optional[str] = None) -> ConstraintViolation:
    return ConstraintViolation(constraint_kind(exc), detail)
