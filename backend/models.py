from typing import Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import CheckConstraint, DateTime, UniqueConstraint
from datetime import date, datetime, timezone

STAFF_ROLES = ("admin", "manager", "cashier")
USER_ROLES = ("customer",) + STAFF_ROLES
ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
SUPPLIER_ORDER_STATUSES = ("Pending", "Shipped", "Received", "Cancelled")


def _in(table, column, values):
    return CheckConstraint(
        f"{column} IN ({', '.join(repr(v) for v in values)})", name=f"ck_{table}_{column}"
    )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp():
    # timestamps are always written timezone-aware, in UTC
    return Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (_in("users", "role", USER_ROLES),)

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    email: str = Field(unique=True)
    password_hash: str
    role: str = "customer"
    employee_code: Optional[str] = None
    created_at: datetime = _timestamp()

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

class Category(SQLModel, table=True):
    __tablename__ = "categories"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(unique=True)
    description: Optional[str] = None

class Book(SQLModel, table=True):
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_books_price"),
        CheckConstraint("stock_quantity >= 0", name="ck_books_stock_quantity"),
        CheckConstraint("reorder_threshold >= 0", name="ck_books_reorder_threshold"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str = Field(index=True)
    author: str = Field(index=True)
    isbn: str = Field(unique=True)
    category_id: Optional[int] = Field(default=None, foreign_key="categories.id", index=True)
    description: Optional[str] = None
    price: float = 0.0
    stock_quantity: int = 0
    reorder_threshold: int = 5
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    image_url: Optional[str] = None
    created_at: datetime = _timestamp()

class Order(SQLModel, table=True):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_orders_total_amount"),
        _in("orders", "status", ORDER_STATUSES),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    employee_id: Optional[int] = Field(default=None, foreign_key="users.id")
    total_amount: float = 0.0
    status: str = "pending"
    created_at: datetime = _timestamp()
    updated_at: datetime = _timestamp()

class OrderItem(SQLModel, table=True):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity"),
        CheckConstraint("price_at_purchase >= 0", name="ck_order_items_price"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="orders.id", ondelete="CASCADE", index=True)
    book_id: int = Field(foreign_key="books.id")
    quantity: int
    price_at_purchase: float

class Review(SQLModel, table=True):
    __tablename__ = "reviews"
    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating"),
        UniqueConstraint("book_id", "user_id", name="uq_reviews_book_user"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    book_id: int = Field(foreign_key="books.id", ondelete="CASCADE", index=True)
    user_id: int = Field(foreign_key="users.id")
    rating: int
    review_text: Optional[str] = None
    created_at: datetime = _timestamp()

class Supplier(SQLModel, table=True):
    __tablename__ = "suppliers"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    address: Optional[str] = None

class SupplierOrder(SQLModel, table=True):
    __tablename__ = "supplier_orders"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_supplier_orders_quantity"),
        _in("supplier_orders", "status", SUPPLIER_ORDER_STATUSES),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    book_id: int = Field(foreign_key="books.id")
    supplier_id: int = Field(foreign_key="suppliers.id")
    quantity: int
    status: str = "Pending"
    expected_delivery: Optional[date] = None
    created_at: datetime = _timestamp()

class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="users.id")
    action: str = Field(index=True)
    details: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = _timestamp()
