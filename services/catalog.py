"""Book, category and student maintenance that has to respect the inventory counters."""
from __future__ import annotations

from typing import Optional

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError

from models import db, Book, Borrowing, Category, Student
from .activity import record_activity
from .classification import dewey_class, is_dewey_number, shelf_location_for
from .errors import ActiveBorrowingsExist, BorrowServiceError, NotFound, ValidationError

BOOK_FIELDS = ('title', 'author', 'isbn', 'quantity', 'category_id', 'dewey_number', 'shelf_location')
CATEGORY_FIELDS = ('name', 'description')
STUDENT_FIELDS = ('name', 'email', 'phone', 'class_grade', 'is_active')
TRUE_VALUES = ('1', 'true', 'yes', 'on')
FALSE_VALUES = ('0', 'false', 'no', 'off')


def _commit(action: str) -> None:
    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        current_app.logger.exception('%s failed: %s', action, exc)
        db.session.rollback()
        raise BorrowServiceError(f'{action} failed, please try again later.') from exc


def parse_flag(value, name: str) -> bool:
    """Read a yes/no value from JSON or a query string; anything else is an error."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
    raise ValidationError(f'{name} must be true or false.')


def _quantity(value) -> int:
    if isinstance(value, (bool, float)):
        raise ValidationError('quantity must be a whole number.')
    try:
        quantity = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError('quantity must be a whole number.') from exc
    if quantity < 0:
        raise ValidationError('quantity must not be negative.')
    return quantity


def _required(value, name: str) -> str:
    text = (value or '').strip() if isinstance(value, str) else ''
    if not text:
        raise ValidationError(f'{name} is required.')
    return text


def _optional(value) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


def _category_id(value) -> Optional[int]:
    if value in (None, ''):
        return None
    if isinstance(value, (bool, float)):
        raise ValidationError('category_id must be an integer.')
    try:
        category_id = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError('category_id must be an integer.') from exc
    if db.session.get(Category, category_id) is None:
        raise ValidationError(f'Category {category_id} does not exist.', category_id=category_id)
    return category_id


def _dewey_number(value) -> Optional[str]:
    dewey_number = _optional(value)
    if dewey_number is not None and not is_dewey_number(dewey_number):
        raise ValidationError('dewey_number must look like 000 to 999, optionally with decimals (e.g. 813.54).')
    return dewey_number


# -- books ----------------------------------------------------------------


def get_book(book_id: int) -> Book:
    book = db.session.get(Book, book_id)
    if not book:
        raise NotFound(f'Book {book_id} does not exist.', book_id=book_id)
    return book


def search_books(q: str = '', available_only: bool = False, category_id: Optional[int] = None):
    query = Book.query
    q = (q or '').strip()
    if q:
        like_value = f'%{q}%'
        query = query.filter(
            or_(
                Book.title.ilike(like_value),
                Book.author.ilike(like_value),
                Book.isbn.ilike(like_value),
                Book.dewey_number.ilike(f'{q}%'),
            )
        )
    if available_only:
        query = query.filter(Book.available_quantity > 0)
    if category_id is not None:
        query = query.filter(Book.category_id == category_id)
    return query.order_by(Book.title).all()


def popular_books(limit: int = 10):
    return (
        Book.query.filter(Book.times_borrowed > 0)
        .order_by(Book.times_borrowed.desc(), Book.title)
        .limit(limit)
        .all()
    )


def new_arrivals(limit: int = 10):
    return Book.query.order_by(Book.created_at.desc(), Book.id.desc()).limit(limit).all()


def related_books(book_id: int, limit: int = 5):
    """Other books shelved in the same Dewey hundreds class."""
    book = get_book(book_id)
    if dewey_class(book.dewey_number) is None:
        return []
    return (
        Book.query.filter(Book.id != book.id, Book.dewey_number.like(f'{book.dewey_number[0]}%'))
        .order_by(Book.dewey_number, Book.title)
        .limit(limit)
        .all()
    )


def add_book(*, title, author, quantity=1, isbn=None, category_id=None, dewey_number=None,
             shelf_location=None, user_id: Optional[int] = None) -> Book:
    quantity = _quantity(quantity)
    dewey_number = _dewey_number(dewey_number)
    book = Book(
        title=_required(title, 'title'),
        author=_required(author, 'author'),
        isbn=_optional(isbn),
        category_id=_category_id(category_id),
        dewey_number=dewey_number,
        shelf_location=_optional(shelf_location) or shelf_location_for(dewey_number),
        quantity=quantity,
        available_quantity=quantity,
        times_borrowed=0,
    )
    db.session.add(book)
    db.session.flush()
    record_activity('book_added', 'book', book.id, user_id=user_id, title=book.title, quantity=quantity)
    _commit('Add book')
    return book


def _set_quantity(book: Book, quantity: int) -> None:
    # copies on loan stay on loan; only the shelf count moves, computed in SQL
    # so a concurrent lend or return is never overwritten
    shift = quantity - Book.quantity
    result = db.session.execute(
        update(Book)
        .where(Book.id == book.id, Book.available_quantity + shift >= 0)
        .values(available_quantity=Book.available_quantity + shift, quantity=quantity),
        execution_options={'synchronize_session': False},
    )
    if result.rowcount != 1:
        raise ValidationError(
            'Cannot reduce quantity below the number of copies currently on loan.',
            book_id=book.id,
        )


def update_book(book_id: int, *, user_id: Optional[int] = None, **fields) -> Book:
    unknown = set(fields) - set(BOOK_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown book field(s): {', '.join(sorted(unknown))}")
    book = get_book(book_id)
    changes = {}
    if 'title' in fields:
        changes['title'] = _required(fields['title'], 'title')
    if 'author' in fields:
        changes['author'] = _required(fields['author'], 'author')
    if 'isbn' in fields:
        changes['isbn'] = _optional(fields['isbn'])
    if 'category_id' in fields:
        changes['category_id'] = _category_id(fields['category_id'])
    if 'dewey_number' in fields:
        changes['dewey_number'] = _dewey_number(fields['dewey_number'])
        if 'shelf_location' not in fields:
            changes['shelf_location'] = shelf_location_for(changes['dewey_number'])
    if 'shelf_location' in fields:
        changes['shelf_location'] = _optional(fields['shelf_location'])
    quantity = _quantity(fields['quantity']) if 'quantity' in fields else None
    if quantity is not None:
        _set_quantity(book, quantity)
    for key, value in changes.items():
        setattr(book, key, value)
    record_activity('book_updated', 'book', book.id, user_id=user_id, fields=','.join(sorted(fields)))
    _commit('Update book')
    return book


def delete_book(book_id: int, *, user_id: Optional[int] = None) -> None:
    book = get_book(book_id)
    outstanding = Borrowing.query.filter(
        Borrowing.book_id == book.id, Borrowing.returned_at.is_(None)
    ).count()
    if outstanding:
        raise ActiveBorrowingsExist(
            f'Book {book_id} still has {outstanding} copies on loan.', book_id=book_id
        )
    record_activity('book_deleted', 'book', book.id, user_id=user_id, title=book.title)
    db.session.delete(book)
    _commit('Delete book')


# -- categories -------------------------------------------------------------


def list_categories():
    return Category.query.order_by(Category.name).all()


def get_category(category_id: int) -> Category:
    category = db.session.get(Category, category_id)
    if not category:
        raise NotFound(f'Category {category_id} does not exist.', category_id=category_id)
    return category


def _unique_category_name(name: str, exclude_id: Optional[int] = None) -> str:
    query = Category.query.filter(Category.name.ilike(name))
    if exclude_id is not None:
        query = query.filter(Category.id != exclude_id)
    if query.first():
        raise ValidationError(f'Category {name} already exists.')
    return name


def add_category(*, name, description=None, user_id: Optional[int] = None) -> Category:
    category = Category(
        name=_unique_category_name(_required(name, 'name')),
        description=_optional(description),
    )
    db.session.add(category)
    db.session.flush()
    record_activity('category_added', 'category', category.id, user_id=user_id, name=category.name)
    _commit('Add category')
    return category


def update_category(category_id: int, *, user_id: Optional[int] = None, **fields) -> Category:
    unknown = set(fields) - set(CATEGORY_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown category field(s): {', '.join(sorted(unknown))}")
    category = get_category(category_id)
    if 'name' in fields:
        category.name = _unique_category_name(_required(fields['name'], 'name'), exclude_id=category.id)
    if 'description' in fields:
        category.description = _optional(fields['description'])
    record_activity('category_updated', 'category', category.id, user_id=user_id)
    _commit('Update category')
    return category


def delete_category(category_id: int, *, user_id: Optional[int] = None) -> None:
    """Remove a category; its books stay in the catalog, uncategorized."""
    category = get_category(category_id)
    db.session.execute(
        update(Book).where(Book.category_id == category.id).values(category_id=None),
        execution_options={'synchronize_session': False},
    )
    record_activity('category_deleted', 'category', category.id, user_id=user_id, name=category.name)
    db.session.delete(category)
    _commit('Delete category')


# -- students --------------------------------------------------------------


def get_student(student_id: int) -> Student:
    student = db.session.get(Student, student_id)
    if not student:
        raise NotFound(f'Student {student_id} does not exist.', student_id=student_id)
    return student


def find_students(q: str = '', active_only: bool = False):
    query = Student.query
    q = (q or '').strip()
    if q:
        like_value = f'%{q}%'
        query = query.filter(
            or_(
                Student.name.ilike(like_value),
                Student.student_number.ilike(like_value),
                Student.class_grade.ilike(like_value),
            )
        )
    if active_only:
        query = query.filter(Student.is_active.is_(True))
    return query.order_by(Student.name).all()


def add_student(*, student_number, name, email=None, phone=None, class_grade=None,
                user_id: Optional[int] = None) -> Student:
    student_number = _required(student_number, 'student_number')
    if Student.query.filter_by(student_number=student_number).first():
        raise ValidationError(f'Student number {student_number} is already registered.')
    student = Student(
        student_number=student_number,
        name=_required(name, 'name'),
        email=email,
        phone=phone,
        class_grade=class_grade,
        is_active=True,
    )
    db.session.add(student)
    db.session.flush()
    record_activity('student_added', 'student', student.id, user_id=user_id, student_number=student_number)
    _commit('Add student')
    return student


def update_student(student_id: int, *, user_id: Optional[int] = None, **fields) -> Student:
    unknown = set(fields) - set(STUDENT_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown student field(s): {', '.join(sorted(unknown))}")
    student = get_student(student_id)
    if 'name' in fields:
        student.name = _required(fields['name'], 'name')
    for key in ('email', 'phone', 'class_grade'):
        if key in fields:
            setattr(student, key, fields[key] or None)
    if 'is_active' in fields:
        student.is_active = parse_flag(fields['is_active'], 'is_active')
    action = 'student_updated'
    if fields.keys() == {'is_active'}:
        action = 'student_activated' if student.is_active else 'student_deactivated'
    record_activity(action, 'student', student.id, user_id=user_id)
    _commit('Update student')
    return student
