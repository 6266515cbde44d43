import datetime
from decimal import Decimal

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from models import db, Book, Student, User
from services.borrowing import BorrowService
from services.settings import LibrarySettings

START = datetime.datetime(2024, 3, 1, 9, 0, tzinfo=datetime.timezone.utc)


class FixedClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + datetime.timedelta(**kwargs)


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'WTF_CSRF_ENABLED': False,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def library_settings():
    return {'value': LibrarySettings(fine_per_day=Decimal('0.50'), max_borrow_days=14, max_books_per_student=3)}


@pytest.fixture
def service(app, clock, library_settings):
    return BorrowService(settings_lookup=lambda: library_settings['value'], clock=clock)


@pytest.fixture
def make_book(app):
    def _make(title='Dune', author='Frank Herbert', quantity=1, available=None):
        book = Book(
            title=title,
            author=author,
            quantity=quantity,
            available_quantity=quantity if available is None else available,
            times_borrowed=0,
        )
        db.session.add(book)
        db.session.commit()
        return book.id
    return _make


@pytest.fixture
def make_student(app):
    counter = {'n': 0}

    def _make(name='Alice', is_active=True):
        counter['n'] += 1
        student = Student(student_number=f'S{counter["n"]:04d}', name=name, is_active=is_active)
        db.session.add(student)
        db.session.commit()
        return student.id
    return _make


@pytest.fixture
def librarian(app):
    user = User(username='librarian', password_hash=generate_password_hash('secret1'), is_admin=True)
    db.session.add(user)
    db.session.commit()
    return user.id
