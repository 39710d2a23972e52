"""Integrity errors are classified from driver error codes"""

import pytest
from sqlalchemy.exc import IntegrityError

from errors import ConstraintViolation, InsufficientStock, constraint_kind, from_integrity_error
from models import Book, OrderItem


def _flush_error(session, obj):
    session.add(obj)
    with pytest.raises(IntegrityError) as exc_info:
        session.flush()
    session.rollback()
    return exc_info.value


def test_duplicate_isbn_is_unique_violation(session, make_book):
    book = make_book("A", stock=1)
    exc = _flush_error(session, Book(title="Copy", author="X", isbn=book.isbn, price=1.0))
    assert constraint_kind(exc) == "unique"


def test_negative_stock_is_check_violation(session):
    exc = _flush_error(session, Book(title="Neg", author="X", isbn="neg-1", price=1.0, stock_quantity=-1))
    assert constraint_kind(exc) == "check"


def test_dangling_reference_is_foreign_key_violation(session):
    exc = _flush_error(session, OrderItem(order_id=404, book_id=404, quantity=1, price_at_purchase=1.0))
    assert constraint_kind(exc) == "foreign_key"


def test_postgres_sqlstate_is_understood():
    class FakeDriverError(Exception):
        pgcode = "23505"

    exc = IntegrityError("INSERT ...", {}, FakeDriverError())
    violation = from_integrity_error(exc, "duplicate")
    assert isinstance(violation, ConstraintViolation)
    assert violation.extra["kind"] == "unique"
    assert violation.status_code == 409
    assert violation.to_dict() == {"error": "constraint_violation", "detail": "duplicate", "kind": "unique"}


def test_check_violation_maps_to_bad_request():
    assert ConstraintViolation("check").status_code == 400


def test_insufficient_stock_payload():
    err = InsufficientStock("Clean Code", 2, book_id=7)
    assert err.status_code == 409
    assert err.to_dict() == {
        "error": "insufficient_stock",
        "detail": "Insufficient stock for Clean Code. Only 2 left.",
        "book_id": 7,
        "title": "Clean Code",
        "available": 2,
    }
