"""Authentication helper utilities used by routes.

Role checks happen here, at the HTTP boundary; the borrowing service trusts
the ids it is handed.
"""
from __future__ import annotations

from functools import wraps
from typing import Optional

from flask import jsonify, session
from werkzeug.security import check_password_hash, generate_password_hash

from models import db, Student, User
from .errors import BorrowServiceError, InactiveStudent, NotFound, ValidationError

MIN_PASSWORD_LENGTH = 6


class AccountExists(BorrowServiceError):
    """An account already exists for this student or username."""

    code = 'account_exists'
    status_code = 409


def login_user(user: User) -> None:
    session['user_id'] = user.id
    session['is_admin'] = bool(user.is_admin)


def logout_user() -> None:
    session.pop('user_id', None)
    session.pop('is_admin', None)


def get_current_user() -> Optional[User]:
    user_id = session.get('user_id')
    return db.session.get(User, user_id) if user_id else None


def authenticate(username: str, password: str) -> Optional[User]:
    user = User.query.filter_by(username=username).first() if username else None
    if user and password and check_password_hash(user.password_hash, password):
        return user
    return None


def register_student(*, student_number: str, username: str, password: str) -> User:
    """Create a login for a student record the librarian already provisioned."""
    student_number = (student_number or '').strip()
    username = (username or '').strip()
    if not student_number or not username or not password:
        raise ValidationError('student_number, username and password are required.')
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f'Password must be at least {MIN_PASSWORD_LENGTH} characters.')
    student = Student.query.filter_by(student_number=student_number).first()
    if not student:
        raise NotFound('Student number not found. Please contact your librarian.')
    if not student.is_active:
        raise InactiveStudent('This student account is inactive.')
    if student.account is not None:
        raise AccountExists('This student already has an account. Please log in instead.')
    if User.query.filter_by(username=username).first():
        raise AccountExists('Username is already taken.')
    user = User(
        username=username,
        password_hash=generate_password_hash(password),
        is_admin=False,
        student=student,
    )
    db.session.add(user)
    db.session.commit()
    return user


def _unauthorized(message: str, status: int):
    return jsonify({'error': 'unauthorized' if status == 401 else 'forbidden', 'message': message}), status


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not session.get('user_id'):
            return _unauthorized('Please log in first.', 401)
        return view(*args, **kwargs)

    return wrapped


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not session.get('user_id'):
            return _unauthorized('Please log in first.', 401)
        if not session.get('is_admin'):
            return _unauthorized('Librarian access required.', 403)
        return view(*args, **kwargs)

    return wrapped


def student_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        user = get_current_user()
        if user is None:
            return _unauthorized('Please log in first.', 401)
        if user.student is None:
            return _unauthorized('Only students can do this.', 403)
        return view(*args, **kwargs)

    return wrapped
