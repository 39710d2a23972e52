"""
Order fulfillment workflows

Placement, status transitions with restock, and supplier receipts,
exercised directly against an in-memory database.
"""

import json
from datetime import timezone

import pytest
from sqlmodel import select

import orders
from errors import (
    CustomerNotFound, EmptyCart, Forbidden, InsufficientStock, InvalidItem,
    InvalidStatus, InvalidTransition, ItemNotFound, OrderNotFound,
    SupplierNotFound, SupplierOrderNotFound,
)
from models import AuditLog, Book, Order, OrderItem, Review, SupplierOrder, User


def all_orders(session):
    return session.exec(select(Order)).all()

def all_items(session):
    return session.exec(select(OrderItem)).all()


class TestPlaceOrder:
    """Stock reservation and order creation"""

    def test_single_line_order(self, session, customer, make_book, stock_of):
        book_a = make_book("A", stock=5, price=10.00)

        placed = orders.place_order(session, customer, [{"book_id": book_a.id, "quantity": 2}])

        assert placed.total_amount == 20.00
        assert stock_of(book_a.id) == 3
        order = session.get(Order, placed.order_id)
        assert order.status == "pending"
        assert order.user_id == customer.id
        assert order.employee_id is None
        items = all_items(session)
        assert len(items) == 1
        assert items[0].price_at_purchase == 10.00
        assert items[0].quantity == 2

    def test_insufficient_stock_leaves_no_trace(self, session, customer, make_book, stock_of):
        book_a = make_book("A", stock=5, price=10.00)
        book_b = make_book("B", stock=0)

        with pytest.raises(InsufficientStock) as exc_info:
            orders.place_order(session, customer, [
                {"book_id": book_a.id, "quantity": 2},
                {"book_id": book_b.id, "quantity": 1},
            ])

        assert exc_info.value.extra["title"] == "B"
        assert exc_info.value.extra["available"] == 0
        assert "B" in exc_info.value.detail
        assert stock_of(book_a.id) == 5
        assert stock_of(book_b.id) == 0
        assert all_orders(session) == []
        assert all_items(session) == []

    def test_missing_book_aborts_whole_cart(self, session, customer, make_book, stock_of):
        book_a = make_book("A", stock=5)

        with pytest.raises(ItemNotFound):
            orders.place_order(session, customer, [
                {"book_id": book_a.id, "quantity": 1},
                {"book_id": 9999, "quantity": 1},
            ])

        assert stock_of(book_a.id) == 5
        assert all_orders(session) == []

    def test_empty_cart(self, session, customer):
        with pytest.raises(EmptyCart):
            orders.place_order(session, customer, [])

    @pytest.mark.parametrize("line", [
        {"book_id": 1, "quantity": 0},
        {"book_id": 1, "quantity": -3},
        {"quantity": 1},
    ])
    def test_invalid_lines(self, session, customer, make_book, stock_of, line):
        book = make_book("A", stock=5)
        assert book.id == 1

        with pytest.raises(InvalidItem):
            orders.place_order(session, customer, [line])

        assert stock_of(book.id) == 5

    def test_repeated_book_checked_against_combined_quantity(self, session, customer, make_book, stock_of):
        book = make_book("A", stock=3)

        with pytest.raises(InsufficientStock) as exc_info:
            orders.place_order(session, customer, [
                {"book_id": book.id, "quantity": 2},
                {"book_id": book.id, "quantity": 2},
            ])

        assert exc_info.value.extra["available"] == 3
        assert stock_of(book.id) == 3

    def test_stock_decrement_matches_requested_quantities(self, session, customer, make_book, stock_of):
        book_a = make_book("A", stock=10, price=12.99)
        book_b = make_book("B", stock=4, price=5.50)

        placed = orders.place_order(session, customer, [
            orders.CartLine(book_id=book_a.id, quantity=3),
            orders.CartLine(book_id=book_b.id, quantity=4),
            orders.CartLine(book_id=book_a.id, quantity=2),
        ])

        assert stock_of(book_a.id) == 5
        assert stock_of(book_b.id) == 0
        assert placed.total_amount == round(12.99 * 5 + 5.50 * 4, 2)
        assert sum(item.quantity for item in all_items(session)) == 9

    def test_price_is_frozen_at_purchase(self, session, customer, make_book):
        book = make_book("A", stock=5, price=10.00)
        placed = orders.place_order(session, customer, [{"book_id": book.id, "quantity": 2}])

        book = session.get(Book, book.id)
        book.price = 99.00
        session.add(book)
        session.commit()

        session.expire_all()
        assert session.get(Order, placed.order_id).total_amount == 20.00
        assert [item.price_at_purchase for item in all_items(session)] == [10.00]

    def test_staff_order_on_behalf_of_customer(self, session, customer, cashier, make_book):
        book = make_book("A", stock=5)

        placed = orders.place_order(session, cashier, [{"book_id": book.id, "quantity": 1}], customer_id=customer.id)

        order = session.get(Order, placed.order_id)
        assert order.user_id == customer.id
        assert order.employee_id == cashier.id

    def test_customer_cannot_order_for_someone_else(self, session, customer, make_user, make_book, stock_of):
        other = make_user("jane")
        book = make_book("A", stock=5)

        with pytest.raises(Forbidden):
            orders.place_order(session, customer, [{"book_id": book.id, "quantity": 1}], customer_id=other.id)
        assert stock_of(book.id) == 5

    def test_staff_order_for_unknown_customer(self, session, cashier, make_book):
        book = make_book("A", stock=5)

        with pytest.raises(CustomerNotFound):
            orders.place_order(session, cashier, [{"book_id": book.id, "quantity": 1}], customer_id=4242)

    def test_successful_order_is_audited(self, session, customer, make_book):
        book = make_book("A", stock=5)
        placed = orders.place_order(session, customer, [{"book_id": book.id, "quantity": 1}], ip_address="10.0.0.1")

        entry = session.exec(select(AuditLog).where(AuditLog.action == "ORDER_CREATED")).one()
        assert entry.user_id == customer.id
        assert entry.ip_address == "10.0.0.1"
        assert json.loads(entry.details)["order_id"] == placed.order_id


class TestOrderStatusTransition:
    """Status lifecycle and restock on cancellation"""

    @pytest.fixture
    def placed(self, session, customer, make_book):
        book = make_book("A", stock=5, price=10.00)
        placed = orders.place_order(session, customer, [{"book_id": book.id, "quantity": 2}])
        return placed, book.id

    def test_cancel_restocks_exactly_once(self, session, cashier, placed, stock_of):
        order, book_id = placed
        assert stock_of(book_id) == 3

        orders.transition_order_status(session, cashier, order.order_id, "cancelled")
        assert stock_of(book_id) == 5

        again = orders.transition_order_status(session, cashier, order.order_id, "cancelled")
        assert again.status == "cancelled"
        assert stock_of(book_id) == 5

    def test_forward_transitions_keep_stock(self, session, cashier, placed, stock_of):
        order, book_id = placed

        for status in ("processing", "shipped", "delivered"):
            updated = orders.transition_order_status(session, cashier, order.order_id, status)
            assert updated.status == status
        assert stock_of(book_id) == 3

    def test_cancelled_order_cannot_be_reopened(self, session, cashier, placed, stock_of):
        order, book_id = placed
        orders.transition_order_status(session, cashier, order.order_id, "cancelled")

        with pytest.raises(InvalidTransition):
            orders.transition_order_status(session, cashier, order.order_id, "pending")

        assert session.get(Order, order.order_id).status == "cancelled"
        assert stock_of(book_id) == 5

    def test_unknown_status_is_rejected(self, session, cashier, placed):
        order, _ = placed

        with pytest.raises(InvalidStatus):
            orders.transition_order_status(session, cashier, order.order_id, "lost")
        assert session.get(Order, order.order_id).status == "pending"

    def test_unknown_order(self, session, cashier):
        with pytest.raises(OrderNotFound):
            orders.transition_order_status(session, cashier, 9999, "shipped")

    def test_customer_cancels_own_order(self, session, customer, placed, stock_of):
        order, book_id = placed

        orders.transition_order_status(session, customer, order.order_id, "cancelled")
        assert stock_of(book_id) == 5

    def test_customer_cannot_ship(self, session, customer, placed):
        order, _ = placed

        with pytest.raises(Forbidden):
            orders.transition_order_status(session, customer, order.order_id, "shipped")

    def test_customer_cannot_cancel_shipped_order(self, session, customer, cashier, placed, stock_of):
        order, book_id = placed
        orders.transition_order_status(session, cashier, order.order_id, "shipped")

        with pytest.raises(Forbidden):
            orders.transition_order_status(session, customer, order.order_id, "cancelled")
        assert stock_of(book_id) == 3

    def test_customer_cannot_cancel_other_customers_order(self, session, make_user, placed):
        order, _ = placed
        other = make_user("jane")

        with pytest.raises(Forbidden):
            orders.transition_order_status(session, other, order.order_id, "cancelled")


class TestSupplierReceipt:
    """Stock credit when supplier orders arrive"""

    def test_receipt_credits_stock_once(self, session, cashier, make_book, make_supplier_order, stock_of):
        book_c = make_book("C", stock=3)
        so = make_supplier_order(book_c, quantity=20)

        received = orders.update_supplier_order_status(session, cashier, so.id, "Received")
        assert received.status == "Received"
        assert stock_of(book_c.id) == 23

        orders.update_supplier_order_status(session, cashier, so.id, "Received")
        assert stock_of(book_c.id) == 23

    def test_other_statuses_do_not_touch_stock(self, session, cashier, make_book, make_supplier_order, stock_of):
        book = make_book("C", stock=3)
        so = make_supplier_order(book, quantity=20)

        assert orders.update_supplier_order_status(session, cashier, so.id, "Shipped").status == "Shipped"
        assert orders.update_supplier_order_status(session, cashier, so.id, "Cancelled").status == "Cancelled"
        assert stock_of(book.id) == 3

    def test_received_is_terminal(self, session, cashier, make_book, make_supplier_order, stock_of):
        book = make_book("C", stock=3)
        so = make_supplier_order(book, quantity=20, status="Received")

        with pytest.raises(InvalidTransition):
            orders.update_supplier_order_status(session, cashier, so.id, "Pending")
        assert stock_of(book.id) == 3

    def test_status_values_are_case_sensitive(self, session, cashier, make_book, make_supplier_order):
        book = make_book("C", stock=3)
        so = make_supplier_order(book, quantity=20)

        with pytest.raises(InvalidStatus):
            orders.update_supplier_order_status(session, cashier, so.id, "received")

    def test_unknown_supplier_order(self, session, cashier):
        with pytest.raises(SupplierOrderNotFound):
            orders.update_supplier_order_status(session, cashier, 9999, "Received")

    def test_customers_cannot_receive(self, session, customer, make_book, make_supplier_order, stock_of):
        book = make_book("C", stock=3)
        so = make_supplier_order(book, quantity=20)

        with pytest.raises(Forbidden):
            orders.update_supplier_order_status(session, customer, so.id, "Received")
        assert stock_of(book.id) == 3


class TestCreateSupplierOrder:

    def test_create(self, session, cashier, supplier, make_book):
        book = make_book("C", stock=1)

        so = orders.create_supplier_order(session, cashier, book.id, supplier.id, 10)

        assert so.id is not None
        assert so.status == "Pending"
        assert so.quantity == 10

    def test_rejects_non_positive_quantity(self, session, cashier, supplier, make_book):
        book = make_book("C", stock=1)
        with pytest.raises(InvalidItem):
            orders.create_supplier_order(session, cashier, book.id, supplier.id, 0)

    def test_unknown_references(self, session, cashier, supplier, make_book):
        book = make_book("C", stock=1)
        with pytest.raises(ItemNotFound):
            orders.create_supplier_order(session, cashier, 9999, supplier.id, 5)
        with pytest.raises(SupplierNotFound):
            orders.create_supplier_order(session, cashier, book.id, 9999, 5)


class TestTimestamps:
    """Timestamps are written timezone-aware, in UTC"""

    @pytest.mark.parametrize("table, column", [
        (User, "created_at"),
        (Book, "created_at"),
        (Order, "created_at"),
        (Order, "updated_at"),
        (Review, "created_at"),
        (SupplierOrder, "created_at"),
        (AuditLog, "created_at"),
    ])
    def test_columns_keep_timezone(self, table, column):
        assert table.__table__.c[column].type.timezone is True

    def test_defaults_are_utc(self):
        order = Order(user_id=1)
        assert order.created_at.tzinfo is timezone.utc
        assert order.updated_at.tzinfo is timezone.utc

    def test_status_change_touches_updated_at(self, session, customer, cashier, make_book):
        book = make_book("A", stock=5)
        placed = orders.place_order(session, customer, [{"book_id": book.id, "quantity": 1}])
        created = session.get(Order, placed.order_id).created_at

        updated = orders.transition_order_status(session, cashier, placed.order_id, "processing")

        assert updated.created_at == created
        assert updated.updated_at >= created
