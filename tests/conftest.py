import os

# keep the app's module-level engine off the working directory
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import auth as auth_utils
import db  # noqa: F401  installs the sqlite foreign key pragma
import models  # noqa: F401  registers the tables
from models import Book, Supplier, SupplierOrder, User


@pytest.fixture(scope="session")
def password_hash():
    return auth_utils.get_password_hash("secret123")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def make_user(session, password_hash):
    def _make(username, role="customer"):
        user = User(username=username, email=f"{username}@example.com", password_hash=password_hash, role=role)
        session.add(user)
        session.commit()
        session.refresh(user)
        return user
    return _make


@pytest.fixture
def customer(make_user):
    return make_user("johndoe")


@pytest.fixture
def cashier(make_user):
    return make_user("cashier", role="cashier")


@pytest.fixture
def admin(make_user):
    return make_user("admin", role="admin")


@pytest.fixture
def make_book(session):
    counter = {"n": 0}

    def _make(title, stock, price=10.0, threshold=5):
        counter["n"] += 1
        book = Book(
            title=title,
            author="Author",
            isbn=f"978-{counter['n']:010d}",
            price=price,
            stock_quantity=stock,
            reorder_threshold=threshold,
        )
        session.add(book)
        session.commit()
        session.refresh(book)
        return book
    return _make


@pytest.fixture
def supplier(session):
    supplier = Supplier(name="Book Distributors Inc.")
    session.add(supplier)
    session.commit()
    session.refresh(supplier)
    return supplier


@pytest.fixture
def make_supplier_order(session, supplier):
    def _make(book, quantity, status="Pending"):
        so = SupplierOrder(book_id=book.id, supplier_id=supplier.id, quantity=quantity, status=status)
        session.add(so)
        session.commit()
        session.refresh(so)
        return so
    return _make


@pytest.fixture
def stock_of(session):
    def _stock(book_id):
        session.expire_all()
        return session.get(Book, book_id).stock_quantity
    return _stock
