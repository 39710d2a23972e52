"""Order placement, order status transitions and supplier receipts.

Each operation takes the session it runs in and the authenticated actor
explicitly, and either commits all of its writes or none of them.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional, Union

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

import audit
from errors import (
    CustomerNotFound, EmptyCart, Forbidden, InsufficientStock, InvalidItem, InvalidTransition,
    InvalidStatus, ItemNotFound, OrderNotFound, SupplierNotFound,
    SupplierOrderNotFound, from_integrity_error,
)
from models import (
    Book, Order, OrderItem, Supplier, SupplierOrder, User, utcnow,
    ORDER_STATUSES, SUPPLIER_ORDER_STATUSES,
)

logger = logging.getLogger(__name__)

# customers may cancel their own order until it leaves the warehouse
CUSTOMER_CANCELLABLE = ("pending", "processing", "cancelled")


class CartLine(BaseModel):
    book_id: Optional[int] = None
    quantity: int = 0


@dataclass
class PlacedOrder:
    order_id: int
    total_amount: float


def _validate_cart(items: Iterable[Union[CartLine, dict]]) -> list[CartLine]:
    lines = [it if isinstance(it, CartLine) else CartLine.model_validate(it) for it in items or []]
    if not lines:
        raise EmptyCart("Cart is empty")
    for line in lines:
        if line.book_id is None:
            raise InvalidItem("Each item needs a book_id")
        if line.quantity <= 0:
            raise InvalidItem(f"Quantity for book {line.book_id} must be positive")
    return lines

def _resolve_owner(session: Session, actor: User, customer_id: Optional[int]) -> int:
    if customer_id is None or customer_id == actor.id:
        return actor.id
    if not actor.is_staff:
        raise Forbidden("Only staff can place orders for other customers")
    if session.get(User, customer_id) is None:
        raise CustomerNotFound(f"Customer {customer_id} not found")
    return customer_id

def _commit(session: Session):
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise from_integrity_error(exc) from exc


def place_order(
    session: Session,
    actor: User,
    items: Iterable[Union[CartLine, dict]],
    customer_id: Optional[int] = None,
    ip_address: Optional[str] = None,
) -> PlacedOrder:
    lines = _validate_cart(items)
    owner_id = _resolve_owner(session, actor, customer_id)

    try:
        # check every line against current stock before writing anything;
        # repeated books are checked against their combined quantity
        requested: "OrderedDict[int, int]" = OrderedDict()
        for line in lines:
            requested[line.book_id] = requested.get(line.book_id, 0) + line.quantity
        books = {}
        for book_id, quantity in requested.items():
            book = session.get(Book, book_id)
            if book is None:
                raise ItemNotFound(f"Book {book_id} not found", book_id=book_id)
            if quantity > book.stock_quantity:
                raise InsufficientStock(book.title, book.stock_quantity, book.id)
            books[book_id] = book
        prices = {book_id: book.price for book_id, book in books.items()}

        for book_id, quantity in requested.items():
            result = session.exec(
                update(Book)
                .where(Book.id == book_id, Book.stock_quantity >= quantity)
                .values(stock_quantity=Book.stock_quantity - quantity)
            )
            if result.rowcount != 1:
                # a concurrent order took the stock between check and write
                book = books[book_id]
                session.refresh(book)
                raise InsufficientStock(book.title, book.stock_quantity, book.id)

        total = round(sum(prices[line.book_id] * line.quantity for line in lines), 2)
        order = Order(
            user_id=owner_id,
            employee_id=actor.id if actor.is_staff else None,
            total_amount=total,
            status="pending",
        )
        session.add(order)
        session.flush()
        for line in lines:
            session.add(OrderItem(
                order_id=order.id,
                book_id=line.book_id,
                quantity=line.quantity,
                price_at_purchase=prices[line.book_id],
            ))
        audit.record(session, actor, "ORDER_CREATED", {
            "order_id": order.id,
            "user_id": owner_id,
            "total_amount": total,
            "items": [line.model_dump() for line in lines],
        }, ip_address)
        order_id = order.id
    except InsufficientStock as exc:
        session.rollback()
        logger.warning("Order by %s rejected: %s", actor.username, exc.detail)
        raise
    except IntegrityError as exc:
        session.rollback()
        raise from_integrity_error(exc) from exc
    except Exception:
        session.rollback()
        raise
    _commit(session)

    logger.info("Order %s placed by %s for user %s, total %.2f", order_id, actor.username, owner_id, total)
    return PlacedOrder(order_id=order_id, total_amount=total)


def transition_order_status(
    session: Session,
    actor: User,
    order_id: int,
    status: str,
    ip_address: Optional[str] = None,
) -> Order:
    if status not in ORDER_STATUSES:
        raise InvalidStatus(f"Invalid status value: {status!r}", allowed=list(ORDER_STATUSES))
    order = session.get(Order, order_id)
    if order is None:
        raise OrderNotFound(f"Order {order_id} not found")
    previous = order.status
    if not actor.is_staff:
        if order.user_id != actor.id or status != "cancelled" or previous not in CUSTOMER_CANCELLABLE:
            raise Forbidden("Customers can only cancel their own open orders")

    if previous == "cancelled" and status != "cancelled":
        raise InvalidTransition(f"Order {order_id} is cancelled and cannot move to {status}")

    try:
        # cancelled is terminal; only the writer that moves the order into
        # cancelled gets a matching row and restocks
        result = session.exec(
            update(Order)
            .where(Order.id == order_id, Order.status != "cancelled")
            .values(status=status, updated_at=utcnow())
        )
        if result.rowcount != 1 and status != "cancelled":
            raise InvalidTransition(f"Order {order_id} was cancelled concurrently")
        restock = status == "cancelled" and result.rowcount == 1

        restocked = []
        if restock:
            items = session.exec(select(OrderItem).where(OrderItem.order_id == order_id)).all()
            for item in items:
                session.exec(
                    update(Book)
                    .where(Book.id == item.book_id)
                    .values(stock_quantity=Book.stock_quantity + item.quantity)
                )
                restocked.append({"book_id": item.book_id, "quantity": item.quantity})
        audit.record(session, actor, "ORDER_STATUS_CHANGED", {
            "order_id": order_id,
            "from": previous,
            "to": status,
            "restocked": restocked,
        }, ip_address)
    except IntegrityError as exc:
        session.rollback()
        raise from_integrity_error(exc) from exc
    except Exception:
        session.rollback()
        raise
    _commit(session)

    session.refresh(order)
    logger.info("Order %s: %s -> %s by %s%s", order_id, previous, status, actor.username,
                " (restocked)" if restock else "")
    return order


def create_supplier_order(
    session: Session,
    actor: User,
    book_id: int,
    supplier_id: int,
    quantity: int,
    expected_delivery: Optional[date] = None,
    ip_address: Optional[str] = None,
) -> SupplierOrder:
    if not actor.is_staff:
        raise Forbidden("Staff only")
    if quantity is None or quantity <= 0:
        raise InvalidItem("Quantity must be positive")
    if session.get(Book, book_id) is None:
        raise ItemNotFound(f"Book {book_id} not found", book_id=book_id)
    if session.get(Supplier, supplier_id) is None:
        raise SupplierNotFound(f"Supplier {supplier_id} not found")

    supplier_order = SupplierOrder(
        book_id=book_id,
        supplier_id=supplier_id,
        quantity=quantity,
        expected_delivery=expected_delivery,
    )
    session.add(supplier_order)
    session.flush()
    audit.record(session, actor, "SUPPLIER_ORDER_CREATED", {
        "supplier_order_id": supplier_order.id,
        "book_id": book_id,
        "supplier_id": supplier_id,
        "quantity": quantity,
    }, ip_address)
    _commit(session)
    session.refresh(supplier_order)
    return supplier_order


def update_supplier_order_status(
    session: Session,
    actor: User,
    supplier_order_id: int,
    status: str,
    ip_address: Optional[str] = None,
) -> SupplierOrder:
    if not actor.is_staff:
        raise Forbidden("Staff only")
    if status not in SUPPLIER_ORDER_STATUSES:
        raise InvalidStatus(f"Invalid status value: {status!r}", allowed=list(SUPPLIER_ORDER_STATUSES))
    supplier_order = session.get(SupplierOrder, supplier_order_id)
    if supplier_order is None:
        raise SupplierOrderNotFound(f"Supplier order {supplier_order_id} not found")
    previous = supplier_order.status

    if previous == "Received" and status != "Received":
        raise InvalidTransition(f"Supplier order {supplier_order_id} was already received")

    try:
        # the stock credit and the status write commit together, and only
        # the writer that moves the order into Received credits stock
        result = session.exec(
            update(SupplierOrder)
            .where(SupplierOrder.id == supplier_order_id, SupplierOrder.status != "Received")
            .values(status=status)
        )
        if result.rowcount != 1 and status != "Received":
            raise InvalidTransition(f"Supplier order {supplier_order_id} was received concurrently")
        receive = status == "Received" and result.rowcount == 1
        if receive:
            session.exec(
                update(Book)
                .where(Book.id == supplier_order.book_id)
                .values(stock_quantity=Book.stock_quantity + supplier_order.quantity)
            )
        audit.record(session, actor, "SUPPLIER_ORDER_STATUS_CHANGED", {
            "supplier_order_id": supplier_order_id,
            "from": previous,
            "to": status,
            "stock_credited": supplier_order.quantity if receive else 0,
        }, ip_address)
    except IntegrityError as exc:
        session.rollback()
        raise from_integrity_error(exc) from exc
    except Exception:
        session.rollback()
        raise
    _commit(session)

    session.refresh(supplier_order)
    logger.info("Supplier order %s: %s -> %s by %s", supplier_order_id, previous, status, actor.username)
    return supplier_order
