from fastapi import FastAPI, HTTPException, Depends, UploadFile, File, Form, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, Field as PydanticField
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, Field, select
from typing import List, Optional
from datetime import date, datetime, time, timedelta, timezone
import pandas as pd, io
import logging

from config import settings
from db import create_db_and_tables, get_session
from models import Book, Category, Order, OrderItem, Review, Supplier, SupplierOrder, User, USER_ROLES
from errors import FulfillmentError, from_integrity_error
import audit
import auth as auth_utils
import orders as fulfillment

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)

create_db_and_tables()
app = FastAPI(title="LibroBuddy API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(FulfillmentError)
def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")

def client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None

def get_current_user(token: str = Depends(oauth2_scheme), session: Session = Depends(get_session)):
    payload = auth_utils.decode_token(token)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid token")
    username = payload.get("sub")
    if not username:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    user = session.exec(select(User).where(User.username == username)).first()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return user

def require_staff(user: User = Depends(get_current_user)):
    if not user.is_staff:
        raise HTTPException(status_code=403, detail="Staff access required")
    return user

def require_admin(user: User = Depends(get_current_user)):
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user

# Auth / users
class RegisterPayload(BaseModel):
    username: str = PydanticField(min_length=3, max_length=50)
    email: str = PydanticField(min_length=3, max_length=255)
    password: str = PydanticField(min_length=6, max_length=72)

def user_to_dict(user: User):
    return {'id': user.id, 'username': user.username, 'email': user.email, 'role': user.role, 'employee_code': user.employee_code}

class LoginPayload(BaseModel):
    username: str
    password: str

def authenticate(session: Session, request: Request, username: str, password: str) -> Optional[User]:
    """Check credentials and record the attempt in the audit trail."""
    user = session.exec(select(User).where(User.username == username)).first()
    if not user or not auth_utils.verify_password(password, user.password_hash):
        audit.record(session, user, 'LOGIN_FAILED', {'username': username}, client_ip(request))
        session.commit()
        logger.warning("Failed login for %s", username)
        return None
    audit.record(session, user, 'LOGIN_SUCCESS', {'username': user.username}, client_ip(request))
    session.commit()
    return user

def token_for(user: User) -> str:
    return auth_utils.create_access_token(data={'sub': user.username, 'role': user.role})

@app.post('/token')
def login_for_access_token(request: Request, form_data: OAuth2PasswordRequestForm = Depends(), session: Session = Depends(get_session)):
    user = authenticate(session, request, form_data.username, form_data.password)
    if not user:
        raise HTTPException(status_code=400, detail='Incorrect username or password')
    return {'access_token': token_for(user), 'token_type': 'bearer', 'user': user_to_dict(user)}

@app.post('/auth/login')
def login(payload: LoginPayload, request: Request, session: Session = Depends(get_session)):
    user = authenticate(session, request, payload.username, payload.password)
    if not user:
        raise HTTPException(status_code=401, detail='Invalid username or password')
    return {'token': token_for(user), 'user': user_to_dict(user)}

@app.post('/auth/register', status_code=201)
def register(payload: RegisterPayload, request: Request, session: Session = Depends(get_session)):
    user = User(username=payload.username, email=payload.email, password_hash=auth_utils.get_password_hash(payload.password), role='customer')
    session.add(user)
    try:
        session.flush()
        audit.record(session, user, 'USER_REGISTERED', {'username': user.username}, client_ip(request))
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise from_integrity_error(e, 'Username or email already exists') from e
    session.refresh(user)
    return user_to_dict(user)

@app.post('/users/create', status_code=201)
def create_user(request: Request, username: str = Form(...), email: str = Form(...), password: str = Form(...), role: str = Form('customer'), employee_code: Optional[str] = Form(None), admin=Depends(require_admin), session: Session = Depends(get_session)):
    if role not in USER_ROLES:
        raise HTTPException(status_code=400, detail=f'Role must be one of {", ".join(USER_ROLES)}')
    user = User(username=username, email=email, password_hash=auth_utils.get_password_hash(password), role=role, employee_code=employee_code)
    session.add(user)
    try:
        session.flush()
        audit.record(session, admin, 'USER_CREATED', {'username': username, 'role': role}, client_ip(request))
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise from_integrity_error(e, 'Username or email already exists') from e
    session.refresh(user)
    return user_to_dict(user)

@app.get('/me')
def read_me(user: User = Depends(get_current_user)):
    return user_to_dict(user)

# Categories
class CategoryCreate(SQLModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None

@app.get('/categories', response_model=List[Category])
def list_categories(session: Session = Depends(get_session)):
    return session.exec(select(Category).order_by(Category.name)).all()

@app.post('/categories', status_code=201)
def create_category(c: CategoryCreate, user=Depends(require_staff), session: Session = Depends(get_session)):
    category = Category.model_validate(c)
    session.add(category)
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise from_integrity_error(e, 'Category already exists') from e
    session.refresh(category)
    return category

# Books
class BookCreate(SQLModel):
    title: str = Field(min_length=1)
    author: str = Field(min_length=1)
    isbn: str = Field(min_length=1)
    category_id: Optional[int] = None
    description: Optional[str] = None
    price: float = Field(ge=0)
    stock_quantity: int = Field(default=0, ge=0)
    reorder_threshold: int = Field(default=5, ge=0)
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    image_url: Optional[str] = None

class BookUpdate(SQLModel):
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    category_id: Optional[int] = None
    description: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    stock_quantity: Optional[int] = Field(default=None, ge=0)
    reorder_threshold: Optional[int] = Field(default=None, ge=0)
    publisher: Optional[str] = None
    publication_year: Optional[int] = None
    image_url: Optional[str] = None

@app.get('/books', response_model=List[Book])
def list_books(q: Optional[str] = None, category_id: Optional[int] = None, session: Session = Depends(get_session)):
    stmt = select(Book)
    if q:
        ql = f'%{q.lower()}%'
        stmt = stmt.where(func.lower(Book.title).like(ql) | func.lower(Book.author).like(ql) | Book.isbn.like(f'%{q}%'))
    if category_id is not None:
        stmt = stmt.where(Book.category_id == category_id)
    return session.exec(stmt.order_by(Book.title)).all()

@app.get('/books-below-threshold', response_model=List[Book])
def books_below_threshold(user=Depends(require_staff), session: Session = Depends(get_session)):
    return session.exec(select(Book).where(Book.stock_quantity <= Book.reorder_threshold).order_by(Book.stock_quantity)).all()

def review_to_dict(review: Review, username: Optional[str]):
    return {'id': review.id, 'book_id': review.book_id, 'user_id': review.user_id, 'username': username, 'rating': review.rating, 'review_text': review.review_text, 'created_at': review.created_at.isoformat()}

@app.get('/books/{book_id}')
def get_book(book_id: int, session: Session = Depends(get_session)):
    book = session.get(Book, book_id)
    if not book:
        raise HTTPException(status_code=404, detail='Book not found')
    rows = session.exec(select(Review, User.username).join(User, User.id == Review.user_id).where(Review.book_id == book_id).order_by(Review.created_at.desc(), Review.id.desc())).all()
    reviews = [review_to_dict(r, username) for r, username in rows]
    average = round(sum(r['rating'] for r in reviews) / len(reviews), 1) if reviews else None
    return {**book.model_dump(), 'reviews': reviews, 'average_rating': average}

@app.post('/books', status_code=201, response_model=Book)
def create_book(b: BookCreate, request: Request, user=Depends(require_staff), session: Session = Depends(get_session)):
    book = Book.model_validate(b)
    session.add(book)
    try:
        session.flush()
        audit.record(session, user, 'BOOK_CREATED', {'book_id': book.id, 'isbn': book.isbn}, client_ip(request))
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise from_integrity_error(e, 'A book with this ISBN already exists') from e
    session.refresh(book)
    return book

@app.put('/books/{book_id}', response_model=Book)
def update_book(book_id: int, b: BookUpdate, request: Request, user=Depends(require_staff), session: Session = Depends(get_session)):
    book = session.get(Book, book_id)
    if not book:
        raise HTTPException(status_code=404, detail='Book not found')
    changes = b.model_dump(exclude_unset=True)
    book.sqlmodel_update(changes)
    session.add(book)
    try:
        audit.record(session, user, 'BOOK_UPDATED', {'book_id': book_id, 'changes': changes}, client_ip(request))
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise from_integrity_error(e) from e
    session.refresh(book)
    return book

@app.delete('/books/{book_id}')
def delete_book(book_id: int, request: Request, user=Depends(require_staff), session: Session = Depends(get_session)):
    book = session.get(Book, book_id)
    if not book:
        raise HTTPException(status_code=404, detail='Book not found')
    session.delete(book)
    try:
        audit.record(session, user, 'BOOK_DELETED', {'book_id': book_id, 'title': book.title}, client_ip(request))
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise from_integrity_error(e, 'Book is referenced by orders and cannot be deleted') from e
    return {'message': 'Book deleted'}

# Reviews
class ReviewCreate(BaseModel):
    book_id: int
    rating: int = PydanticField(ge=1, le=5)
    review_text: Optional[str] = None

@app.post('/reviews', status_code=201)
def create_review(payload: ReviewCreate, request: Request, user: User = Depends(get_current_user), session: Session = Depends(get_session)):
    if not session.get(Book, payload.book_id):
        raise HTTPException(status_code=404, detail='Book not found')
    review = Review(book_id=payload.book_id, user_id=user.id, rating=payload.rating, review_text=payload.review_text)
    session.add(review)
    try:
        session.flush()
        audit.record(session, user, 'REVIEW_CREATED', {'review_id': review.id, 'book_id': payload.book_id, 'rating': payload.rating}, client_ip(request))
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise from_integrity_error(e, 'You have already reviewed this book') from e
    session.refresh(review)
    return review_to_dict(review, user.username)

# Import / Export books
@app.post('/import/books')
def import_books(file: UploadFile = File(...), user=Depends(require_staff), session: Session = Depends(get_session)):
    df = pd.read_csv(file.file, dtype={'isbn': str})
    if 'isbn' not in df.columns or 'title' not in df.columns:
        raise HTTPException(status_code=400, detail='CSV needs at least isbn and title columns')
    df = df.where(pd.notnull(df), None)
    created = updated = 0
    for _, row in df.iterrows():
        existing = session.exec(select(Book).where(Book.isbn == str(row['isbn']))).first()
        if existing:
            existing.title = row.get('title') or existing.title
            existing.author = row.get('author') or existing.author
            if row.get('price') is not None: existing.price = float(row['price'])
            if row.get('stock_quantity') is not None: existing.stock_quantity = int(row['stock_quantity'])
            if row.get('reorder_threshold') is not None: existing.reorder_threshold = int(row['reorder_threshold'])
            session.add(existing); updated += 1
        else:
            book = Book(isbn=str(row['isbn']), title=row['title'], author=row.get('author') or 'Unknown', price=float(row.get('price') or 0), stock_quantity=int(row.get('stock_quantity') or 0), reorder_threshold=int(row.get('reorder_threshold') or 5))
            session.add(book); created += 1
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise from_integrity_error(e) from e
    return {'imported': created, 'updated': updated}

@app.get('/export/books')
def export_books(user=Depends(require_staff), session: Session = Depends(get_session)):
    books = session.exec(select(Book).order_by(Book.id)).all()
    df = pd.DataFrame([{'isbn': b.isbn, 'title': b.title, 'author': b.author, 'price': b.price, 'stock_quantity': b.stock_quantity, 'reorder_threshold': b.reorder_threshold} for b in books], columns=['isbn', 'title', 'author', 'price', 'stock_quantity', 'reorder_threshold'])
    stream = io.StringIO(); df.to_csv(stream, index=False); stream.seek(0)
    return StreamingResponse(stream, media_type='text/csv', headers={'Content-Disposition': 'attachment; filename=books.csv'})

# Orders
class OrderCreate(BaseModel):
    items: List[fulfillment.CartLine] = []
    user_id: Optional[int] = None

class StatusUpdate(BaseModel):
    status: str

# Helper to enrich an order with its line items
def order_to_dict(session, order: Order):
    items = session.exec(select(OrderItem).where(OrderItem.order_id == order.id)).all()
    items_out = []
    for it in items:
        book = session.get(Book, it.book_id)
        items_out.append({'id': it.id, 'book_id': it.book_id, 'title': book.title if book else None, 'quantity': it.quantity, 'price_at_purchase': it.price_at_purchase})
    owner = session.get(User, order.user_id)
    return {'id': order.id, 'user_id': order.user_id, 'username': owner.username if owner else None, 'employee_id': order.employee_id, 'status': order.status, 'total_amount': order.total_amount, 'created_at': order.created_at.isoformat(), 'updated_at': order.updated_at.isoformat(), 'items': items_out}

@app.post('/orders', status_code=201)
def create_order(payload: OrderCreate, request: Request, user: User = Depends(get_current_user), session: Session = Depends(get_session)):
    placed = fulfillment.place_order(session, user, payload.items, customer_id=payload.user_id, ip_address=client_ip(request))
    return {'message': 'Order created successfully', 'orderId': placed.order_id, 'total_amount': placed.total_amount}

@app.get('/orders')
def list_my_orders(user: User = Depends(get_current_user), session: Session = Depends(get_session)):
    rows = session.exec(select(Order).where(Order.user_id == user.id).order_by(Order.created_at.desc(), Order.id.desc())).all()
    return [order_to_dict(session, o) for o in rows]

@app.get('/orders/all')
def list_all_orders(status: Optional[str] = None, user=Depends(require_staff), session: Session = Depends(get_session)):
    stmt = select(Order)
    if status:
        stmt = stmt.where(Order.status == status)
    rows = session.exec(stmt.order_by(Order.created_at.desc(), Order.id.desc())).all()
    return [order_to_dict(session, o) for o in rows]

@app.get('/orders/{order_id}')
def get_order(order_id: int, user: User = Depends(get_current_user), session: Session = Depends(get_session)):
    order = session.get(Order, order_id)
    if not order or (order.user_id != user.id and not user.is_staff):
        raise HTTPException(status_code=404, detail='Order not found')
    return order_to_dict(session, order)

@app.put('/orders/{order_id}/status')
def update_order_status(order_id: int, payload: StatusUpdate, request: Request, user: User = Depends(get_current_user), session: Session = Depends(get_session)):
    order = fulfillment.transition_order_status(session, user, order_id, payload.status, ip_address=client_ip(request))
    return {'message': 'Order status updated', 'id': order.id, 'status': order.status}

# Suppliers / supplier orders
class SupplierCreate(SQLModel):
    name: str = Field(min_length=1)
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    address: Optional[str] = None

class SupplierOrderCreate(BaseModel):
    book_id: int
    supplier_id: int
    quantity: int
    expected_delivery: Optional[date] = None

@app.get('/suppliers', response_model=List[Supplier])
def list_suppliers(user=Depends(require_staff), session: Session = Depends(get_session)):
    return session.exec(select(Supplier).order_by(Supplier.name)).all()

@app.post('/suppliers', status_code=201, response_model=Supplier)
def create_supplier(s: SupplierCreate, user=Depends(require_staff), session: Session = Depends(get_session)):
    supplier = Supplier.model_validate(s)
    session.add(supplier); session.commit(); session.refresh(supplier); return supplier

def supplier_order_to_dict(session, so: SupplierOrder):
    book = session.get(Book, so.book_id)
    supplier = session.get(Supplier, so.supplier_id)
    return {'id': so.id, 'book_id': so.book_id, 'title': book.title if book else None, 'supplier_id': so.supplier_id, 'supplier_name': supplier.name if supplier else None, 'quantity': so.quantity, 'status': so.status, 'expected_delivery': so.expected_delivery.isoformat() if so.expected_delivery else None, 'created_at': so.created_at.isoformat()}

@app.get('/supplier-orders')
def list_supplier_orders(user=Depends(require_staff), session: Session = Depends(get_session)):
    rows = session.exec(select(SupplierOrder).order_by(SupplierOrder.created_at.desc(), SupplierOrder.id.desc())).all()
    return [supplier_order_to_dict(session, so) for so in rows]

@app.post('/supplier-orders', status_code=201)
def create_supplier_order(payload: SupplierOrderCreate, request: Request, user=Depends(require_staff), session: Session = Depends(get_session)):
    so = fulfillment.create_supplier_order(session, user, payload.book_id, payload.supplier_id, payload.quantity, payload.expected_delivery, ip_address=client_ip(request))
    return supplier_order_to_dict(session, so)

@app.put('/supplier-orders/{supplier_order_id}/status')
def update_supplier_order_status(supplier_order_id: int, payload: StatusUpdate, request: Request, user=Depends(require_staff), session: Session = Depends(get_session)):
    so = fulfillment.update_supplier_order_status(session, user, supplier_order_id, payload.status, ip_address=client_ip(request))
    return supplier_order_to_dict(session, so)

# Reporting
@app.get('/stats')
def stats(user=Depends(require_staff), session: Session = Depends(get_session)):
    count = lambda model: session.exec(select(func.count()).select_from(model)).one()
    revenue = session.exec(select(func.coalesce(func.sum(Order.total_amount), 0.0)).where(Order.status != 'cancelled')).one()
    low_stock = session.exec(select(func.count()).select_from(Book).where(Book.stock_quantity <= Book.reorder_threshold)).one()
    by_status = dict(session.exec(select(Order.status, func.count()).group_by(Order.status)).all())
    return {
        'total_books': count(Book),
        'total_users': count(User),
        'total_orders': count(Order),
        'total_revenue': round(float(revenue), 2),
        'low_stock_books': low_stock,
        'orders_by_status': by_status,
    }

@app.get('/sales-report')
def sales_report(start: Optional[date] = None, end: Optional[date] = None, user=Depends(require_staff), session: Session = Depends(get_session)):
    stmt = select(Order, User.username).join(User, User.id == Order.user_id).where(Order.status != 'cancelled')
    # report days are UTC days
    if start:
        stmt = stmt.where(Order.created_at >= datetime.combine(start, time.min, tzinfo=timezone.utc))
    if end:
        stmt = stmt.where(Order.created_at < datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc))
    rows = session.exec(stmt.order_by(Order.created_at.desc())).all()
    report = [{'id': o.id, 'created_at': o.created_at.isoformat(), 'username': username, 'total_amount': o.total_amount, 'status': o.status} for o, username in rows]
    return {
        'orders': report,
        'total_sales': round(sum(r['total_amount'] for r in report), 2),
        'total_orders': len(report),
    }

@app.get('/audit-logs')
def audit_logs(action: Optional[str] = None, limit: int = 200, user=Depends(require_admin), session: Session = Depends(get_session)):
    entries = audit.list_entries(session, action, limit)
    return [{'id': e.id, 'user_id': e.user_id, 'action': e.action, 'details': e.details, 'ip_address': e.ip_address, 'created_at': e.created_at.isoformat()} for e in entries]

# Seed endpoint
@app.post('/seed')
def seed_default(session: Session = Depends(get_session)):
    if session.exec(select(Book)).first():
        return {'status': 'already seeded'}
    try:
        fiction = Category(name='Fiction', description='Fictional stories and novels')
        nonfiction = Category(name='Non-Fiction', description='Educational and factual books')
        science = Category(name='Science', description='Scientific literature and research')
        technology = Category(name='Technology', description='Programming, computers, and tech')
        session.add_all([fiction, nonfiction, science, technology]); session.flush()

        books = [
            Book(title='The Great Gatsby', author='F. Scott Fitzgerald', isbn='978-0743273565', category_id=fiction.id, price=12.99, stock_quantity=25, publisher='Scribner', publication_year=1925),
            Book(title='1984', author='George Orwell', isbn='978-0451524935', category_id=fiction.id, price=13.99, stock_quantity=40, publisher='Signet Classic', publication_year=1949),
            Book(title='Sapiens', author='Yuval Noah Harari', isbn='978-0062316097', category_id=nonfiction.id, price=18.99, stock_quantity=20, publisher='Harper', publication_year=2015),
            Book(title='A Brief History of Time', author='Stephen Hawking', isbn='978-0553380163', category_id=science.id, price=15.99, stock_quantity=18, publisher='Bantam', publication_year=1988),
            Book(title='Clean Code', author='Robert Martin', isbn='978-0132350884', category_id=technology.id, price=42.99, stock_quantity=12, publisher='Prentice Hall', publication_year=2008),
            Book(title='The Invention of Morel', author='Adolfo Bioy Casares', isbn='978-1590170571', category_id=fiction.id, price=14.99, stock_quantity=2, publisher='NYRB Classics', publication_year=1940),
        ]
        session.add_all(books)

        session.add_all([
            Supplier(name='Book Distributors Inc.', contact_email='contact@bookdistributors.com', contact_phone='555-1234', address='123 Main St, City'),
            Supplier(name='Rare Books Ltd.', contact_email='info@rarebooksltd.com', contact_phone='555-5678', address='456 Elm St, City'),
        ])

        for username, email, password, role, code in [
            ('admin', 'admin@librobuddy.com', 'admin123', 'admin', None),
            ('johndoe', 'john@example.com', 'customer123', 'customer', None),
            ('cashier', 'cashier@librobuddy.com', 'cashier123', 'cashier', 'EMP001'),
        ]:
            if not session.exec(select(User).where(User.username == username)).first():
                session.add(User(username=username, email=email, password_hash=auth_utils.get_password_hash(password), role=role, employee_code=code))
        session.flush()

        reader = session.exec(select(User).where(User.username == 'johndoe')).one()
        session.add_all([
            Review(book_id=books[0].id, user_id=reader.id, rating=5, review_text='An absolute masterpiece! A must-read classic.'),
            Review(book_id=books[1].id, user_id=reader.id, rating=4, review_text='Chilling and thought-provoking. Very relevant today.'),
            Review(book_id=books[2].id, user_id=reader.id, rating=5, review_text='Mind-blowing perspective on human history!'),
            Review(book_id=books[4].id, user_id=reader.id, rating=5, review_text='Every developer should read this book. Life-changing!'),
        ])

        session.commit()
        return {'status': 'seeded'}
    except Exception as e:
        session.rollback()
        logger.exception("Seeding failed")
        raise HTTPException(status_code=500, detail=str(e))
