import datetime
from datetime import timezone
from flask_sqlalchemy import SQLAlchemy

# SQLAlchemy instance (initialized by app)
db = SQLAlchemy()


def utcnow():
    return datetime.datetime.now(timezone.utc)


def as_utc(value):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value):
    return as_utc(value).isoformat() if value else None


REQUEST_PENDING = 'pending'
REQUEST_APPROVED = 'approved'
REQUEST_REJECTED = 'rejected'
REQUEST_CANCELLED = 'cancelled'
REQUEST_STATUSES = (REQUEST_PENDING, REQUEST_APPROVED, REQUEST_REJECTED, REQUEST_CANCELLED)


class Category(db.Model):
    __tablename__ = 'category'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    books = db.relationship('Book', backref='category', lazy='dynamic')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'book_count': self.books.count(),
        }


class Book(db.Model):
    __tablename__ = 'book'
    __table_args__ = (
        db.CheckConstraint('available_quantity >= 0', name='ck_book_available_non_negative'),
        db.CheckConstraint('available_quantity <= quantity', name='ck_book_available_le_quantity'),
        db.CheckConstraint('times_borrowed >= 0', name='ck_book_times_borrowed_non_negative'),
    )
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    author = db.Column(db.String(255), nullable=False)
    isbn = db.Column(db.String(20), nullable=True)
    category_id = db.Column(
        db.Integer, db.ForeignKey('category.id', ondelete='SET NULL'), nullable=True, index=True
    )
    # call number such as '813.54'; the first digit picks the shelf
    dewey_number = db.Column(db.String(20), nullable=True, index=True)
    shelf_location = db.Column(db.String(100), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    available_quantity = db.Column(db.Integer, nullable=False, default=1)
    times_borrowed = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    borrow_requests = db.relationship(
        'BorrowRequest', backref='book', lazy='dynamic', cascade='all, delete-orphan'
    )
    borrowings = db.relationship(
        'Borrowing', backref='book', lazy='dynamic', cascade='all, delete-orphan'
    )

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'author': self.author,
            'isbn': self.isbn,
            'category_id': self.category_id,
            'category_name': self.category.name if self.category else None,
            'dewey_number': self.dewey_number,
            'shelf_location': self.shelf_location,
            'quantity': self.quantity,
            'available_quantity': self.available_quantity,
            'times_borrowed': self.times_borrowed,
            'created_at': _iso(self.created_at),
        }


class Student(db.Model):
    __tablename__ = 'student'
    id = db.Column(db.Integer, primary_key=True)
    # school-issued id, used for self-registration
    student_number = db.Column(db.String(40), unique=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), nullable=True)
    phone = db.Column(db.String(30), nullable=True)
    class_grade = db.Column(db.String(40), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'student_number': self.student_number,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'class_grade': self.class_grade,
            'is_active': self.is_active,
        }


class User(db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(200), nullable=False)
    is_admin = db.Column(db.Boolean, default=False)
    student_id = db.Column(db.Integer, db.ForeignKey('student.id'), unique=True, nullable=True)
    student = db.relationship('Student', backref=db.backref('account', uselist=False))

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'is_admin': bool(self.is_admin),
            'student': self.student.to_dict() if self.student else None,
        }


class BorrowRequest(db.Model):
    __tablename__ = 'borrow_request'
    __table_args__ = (
        # at most one pending request per (student, book)
        db.Index(
            'uq_borrow_request_pending',
            'student_id',
            'book_id',
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
    )
    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('student.id'), nullable=False, index=True)
    book_id = db.Column(db.Integer, db.ForeignKey('book.id'), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False, default=REQUEST_PENDING)
    requested_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reviewed_by_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    admin_notes = db.Column(db.Text, nullable=True)

    student = db.relationship('Student', backref=db.backref('borrow_requests', lazy='dynamic'))
    reviewed_by = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'student_name': self.student.name if self.student else None,
            'book_id': self.book_id,
            'book_title': self.book.title if self.book else None,
            'status': self.status,
            'requested_at': _iso(self.requested_at),
            'reviewed_at': _iso(self.reviewed_at),
            'reviewed_by': self.reviewed_by.username if self.reviewed_by else None,
            'admin_notes': self.admin_notes,
        }


class Borrowing(db.Model):
    __tablename__ = 'borrowing'
    id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey('book.id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('student.id'), nullable=False, index=True)
    request_id = db.Column(db.Integer, db.ForeignKey('borrow_request.id'), nullable=True)
    borrowed_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    due_date = db.Column(db.DateTime(timezone=True), nullable=False)
    returned_at = db.Column(db.DateTime(timezone=True), nullable=True)
    # rate in effect when the book was issued
    fine_per_day = db.Column(db.Numeric(10, 2), nullable=True)
    fine_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    fine_paid = db.Column(db.Boolean, nullable=False, default=False)

    student = db.relationship('Student', backref=db.backref('borrowings', lazy='dynamic'))
    request = db.relationship('BorrowRequest', backref=db.backref('borrowing', uselist=False))

    @property
    def is_active(self):
        return self.returned_at is None

    def is_overdue(self, now=None):
        now = now or utcnow()
        return self.is_active and as_utc(self.due_date) < now

    def to_dict(self, now=None):
        return {
            'id': self.id,
            'book_id': self.book_id,
            'book_title': self.book.title if self.book else None,
            'student_id': self.student_id,
            'student_name': self.student.name if self.student else None,
            'request_id': self.request_id,
            'borrowed_at': _iso(self.borrowed_at),
            'due_date': _iso(self.due_date),
            'returned_at': _iso(self.returned_at),
            'is_overdue': self.is_overdue(now),
            'fine_amount': f'{self.fine_amount or 0:.2f}',
            'fine_paid': self.fine_paid,
        }


class LibrarySetting(db.Model):
    __tablename__ = 'library_setting'
    id = db.Column(db.Integer, primary_key=True)
    setting_key = db.Column(db.String(64), unique=True, nullable=False)
    setting_value = db.Column(db.String(255), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'key': self.setting_key,
            'value': self.setting_value,
            'updated_at': _iso(self.updated_at),
        }


class ActivityLog(db.Model):
    __tablename__ = 'activity_log'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    action = db.Column(db.String(64), nullable=False)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=True)
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    user = db.relationship('User')

    def to_dict(self):
        return {
            'id': self.id,
            'user': self.user.username if self.user else None,
            'action': self.action,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'details': self.details,
            'created_at': _iso(self.created_at),
        }
