"""Borrowing domain service logic.

Covers the whole loan lifecycle: a student requests a book, a librarian
approves (which issues it) or rejects, a librarian may also issue a book
directly, and returns settle any overdue fine.

Inventory counters are only ever changed through conditional UPDATE
statements (``WHERE available_quantity > 0`` and friends) inside the same
transaction that writes the request/borrowing rows, so two reviewers racing
for the last copy cannot both win and no operation commits half its effects.
"""
from __future__ import annotations

import datetime
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import (
    REQUEST_APPROVED,
    REQUEST_CANCELLED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    REQUEST_STATUSES,
    Book,
    Borrowing,
    BorrowRequest,
    Student,
    db,
    utcnow,
)
from .activity import record_activity
from .errors import (
    AlreadyReturned,
    AlreadyReviewed,
    BorrowLimitReached,
    BorrowServiceError,
    ConsistencyViolation,
    DuplicateRequest,
    InactiveStudent,
    NoCopiesAvailable,
    NotFound,
    ValidationError,
)
from .fines import CENT, MAX_AMOUNT, FineQuote, compute_fine, days_overdue
from .settings import MAX_LOAN_DAYS, LibrarySettings, load_settings

REVIEW_DECISIONS = (REQUEST_APPROVED, REQUEST_REJECTED)
BORROWING_STATES = ('active', 'returned', 'overdue')
# Conditional updates are judged by rowcount; the session reloads on commit.
UNSYNCED = {'synchronize_session': False}


@dataclass(frozen=True)
class BorrowResult:
    borrowing: Borrowing
    book: Book


@dataclass(frozen=True)
class ReviewResult:
    request: BorrowRequest
    borrowing: Optional[Borrowing] = None


@dataclass(frozen=True)
class ReturnResult:
    borrowing: Borrowing
    book: Book
    quote: FineQuote
    fine_amount: Decimal


def _positive_int(value, name: str, maximum: Optional[int] = None) -> int:
    if isinstance(value, (bool, float)):
        raise ValidationError(f'{name} must be a positive integer.')
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f'{name} must be a positive integer.') from exc
    if number <= 0:
        raise ValidationError(f'{name} must be a positive integer.')
    if maximum is not None and number > maximum:
        raise ValidationError(f'{name} must not exceed {maximum}.')
    return number


def _money(value, name: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f'{name} must be a number.') from exc
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f'{name} must be zero or more.')
    if amount > MAX_AMOUNT:
        raise ValidationError(f'{name} must not exceed {MAX_AMOUNT}.')
    return amount.quantize(CENT)


class BorrowService:
    """Encapsulates borrowing related business logic with transaction handling.

    ``settings_lookup`` is called at the moment each operation runs and
    ``clock`` supplies the current UTC time; both default to the live
    database settings and the wall clock.
    """

    def __init__(
        self,
        settings_lookup: Optional[Callable[[], LibrarySettings]] = None,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ):
        self._settings_lookup = settings_lookup or load_settings
        self._clock = clock or utcnow

    def _now(self) -> datetime.datetime:
        return self._clock()

    def _settings(self) -> LibrarySettings:
        return self._settings_lookup()

    @contextmanager
    def _transaction(self, action: str):
        try:
            yield
            db.session.commit()
        except BorrowServiceError:
            db.session.rollback()
            raise
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.exception('%s transaction failed: %s', action, exc)
            raise BorrowServiceError(f'{action} failed, please try again later.') from exc

    @staticmethod
    def _get(model, record_id, label: str):
        record = db.session.get(model, record_id) if record_id is not None else None
        if record is None:
            raise NotFound(f'{label} {record_id} does not exist.', **{f'{label.lower()}_id': record_id})
        return record

    def _check_eligible(self, student: Student, settings: LibrarySettings) -> None:
        if not student.is_active:
            raise InactiveStudent(f'Student {student.student_number} is inactive.', student_id=student.id)
        on_loan = Borrowing.query.filter(
            Borrowing.student_id == student.id,
            Borrowing.returned_at.is_(None),
        ).count()
        if on_loan >= settings.max_books_per_student:
            raise BorrowLimitReached(
                f'Student {student.student_number} already has {on_loan} book(s) on loan.',
                student_id=student.id,
                limit=settings.max_books_per_student,
            )

    @staticmethod
    def _take_copy(book_id: int) -> None:
        result = db.session.execute(
            update(Book)
            .where(Book.id == book_id, Book.available_quantity > 0)
            .values(
                available_quantity=Book.available_quantity - 1,
                times_borrowed=Book.times_borrowed + 1,
            ),
            execution_options=UNSYNCED,
        )
        if result.rowcount != 1:
            raise NoCopiesAvailable(book_id=book_id)

    @staticmethod
    def _put_back_copy(book_id: int) -> None:
        result = db.session.execute(
            update(Book)
            .where(Book.id == book_id, Book.available_quantity < Book.quantity)
            .values(available_quantity=Book.available_quantity + 1),
            execution_options=UNSYNCED,
        )
        if result.rowcount == 1:
            return
        current_app.logger.error(
            'Inventory consistency violation: book %s has every copy on the shelf but a loan was returned',
            book_id,
        )
        if current_app.config.get('STRICT_INVENTORY', True):
            raise ConsistencyViolation(
                'Returning this book would exceed its total quantity.', book_id=book_id
            )

    def _lend(
        self,
        *,
        book: Book,
        student: Student,
        days: int,
        settings: LibrarySettings,
        now: datetime.datetime,
        request: Optional[BorrowRequest] = None,
    ) -> Borrowing:
        self._take_copy(book.id)
        borrowing = Borrowing(
            book_id=book.id,
            student_id=student.id,
            request=request,
            borrowed_at=now,
            due_date=now + datetime.timedelta(days=days),
            fine_per_day=settings.fine_per_day,
            fine_amount=Decimal('0.00'),
            fine_paid=False,
        )
        db.session.add(borrowing)
        db.session.flush()
        return borrowing

    @staticmethod
    def _transition_request(request: BorrowRequest, new_status: str, **values) -> None:
        # only a pending request may move; a concurrent review loses here
        result = db.session.execute(
            update(BorrowRequest)
            .where(BorrowRequest.id == request.id, BorrowRequest.status == REQUEST_PENDING)
            .values(status=new_status, **values),
            execution_options=UNSYNCED,
        )
        if result.rowcount != 1:
            raise AlreadyReviewed(request_id=request.id)

    @staticmethod
    def _find_pending(student_id: int, book_id: int) -> Optional[BorrowRequest]:
        return BorrowRequest.query.filter_by(
            student_id=student_id, book_id=book_id, status=REQUEST_PENDING
        ).first()

    # -- request intake -------------------------------------------------

    def submit_request(self, *, student_id: int, book_id: int) -> BorrowRequest:
        now = self._now()
        with self._transaction('Borrow request'):
            student = self._get(Student, student_id, 'Student')
            if not student.is_active:
                raise InactiveStudent(f'Student {student.student_number} is inactive.', student_id=student.id)
            book = self._get(Book, book_id, 'Book')
            existing = self._find_pending(student.id, book.id)
            if existing:
                raise DuplicateRequest(request_id=existing.id)
            request = BorrowRequest(
                student_id=student.id,
                book_id=book.id,
                status=REQUEST_PENDING,
                requested_at=now,
            )
            db.session.add(request)
            try:
                db.session.flush()
            except IntegrityError as exc:
                # lost a race against an identical submission
                raise DuplicateRequest() from exc
            record_activity('request_submitted', 'borrow_request', request.id, book_id=book.id, student_id=student.id)
        current_app.logger.info('Student %s requested book %s (request %s)', student_id, book_id, request.id)
        return request

    def cancel_request(self, *, request_id: int, by_student_id: int) -> BorrowRequest:
        with self._transaction('Cancel request'):
            request = BorrowRequest.query.filter_by(id=request_id, student_id=by_student_id).first()
            if request is None:
                raise NotFound(f'Request {request_id} does not exist.', request_id=request_id)
            if request.status != REQUEST_PENDING:
                raise AlreadyReviewed(f'Request {request_id} is already {request.status}.', request_id=request_id)
            self._transition_request(request, REQUEST_CANCELLED)
            record_activity('request_cancelled', 'borrow_request', request.id, student_id=by_student_id)
        current_app.logger.info('Request %s cancelled by student %s', request_id, by_student_id)
        return request

    # -- review ---------------------------------------------------------

    def review_request(
        self,
        *,
        request_id: int,
        decision: str,
        reviewer_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> ReviewResult:
        if decision not in REVIEW_DECISIONS:
            raise ValidationError(f"Decision must be one of: {', '.join(REVIEW_DECISIONS)}.")
        notes = (notes or '').strip() or None
        now = self._now()
        borrowing = None
        with self._transaction('Review'):
            request = self._get(BorrowRequest, request_id, 'Request')
            if request.status != REQUEST_PENDING:
                raise AlreadyReviewed(f'Request {request_id} is already {request.status}.', request_id=request_id)
            if decision == REQUEST_APPROVED:
                settings = self._settings()
                self._check_eligible(request.student, settings)
            self._transition_request(
                request,
                decision,
                reviewed_at=now,
                reviewed_by_id=reviewer_id,
                admin_notes=notes,
            )
            if decision == REQUEST_APPROVED:
                borrowing = self._lend(
                    book=request.book,
                    student=request.student,
                    days=settings.max_borrow_days,
                    settings=settings,
                    now=now,
                    request=request,
                )
            record_activity(
                f'request_{decision}',
                'borrow_request',
                request.id,
                user_id=reviewer_id,
                borrowing_id=borrowing.id if borrowing else None,
            )
        current_app.logger.info('Request %s %s by user %s', request_id, decision, reviewer_id)
        return ReviewResult(request=request, borrowing=borrowing)

    def approve_request(self, *, request_id: int, reviewer_id: Optional[int] = None, notes: Optional[str] = None) -> ReviewResult:
        return self.review_request(request_id=request_id, decision=REQUEST_APPROVED, reviewer_id=reviewer_id, notes=notes)

    def reject_request(self, *, request_id: int, reviewer_id: Optional[int] = None, notes: Optional[str] = None) -> ReviewResult:
        return self.review_request(request_id=request_id, decision=REQUEST_REJECTED, reviewer_id=reviewer_id, notes=notes)

    # -- direct issue ---------------------------------------------------

    def issue_book(
        self,
        *,
        book_id: int,
        student_id: int,
        days: Optional[int] = None,
        issued_by_id: Optional[int] = None,
    ) -> BorrowResult:
        if days is not None:
            days = _positive_int(days, 'days', maximum=MAX_LOAN_DAYS)
        now = self._now()
        with self._transaction('Issue'):
            settings = self._settings()
            student = self._get(Student, student_id, 'Student')
            self._check_eligible(student, settings)
            book = self._get(Book, book_id, 'Book')
            borrowing = self._lend(
                book=book,
                student=student,
                days=days or settings.max_borrow_days,
                settings=settings,
                now=now,
            )
            record_activity('book_issued', 'borrowing', borrowing.id, user_id=issued_by_id, book_id=book.id, student_id=student.id)
        current_app.logger.info('Book %s issued to student %s (borrowing %s)', book_id, student_id, borrowing.id)
        return BorrowResult(borrowing=borrowing, book=book)

    # -- returns and fines ----------------------------------------------

    def _quote(self, borrowing: Borrowing, now: datetime.datetime, settings: LibrarySettings) -> FineQuote:
        rate = settings.fine_per_day
        if current_app.config.get('LOCK_FINE_RATE_AT_ISSUE') and borrowing.fine_per_day is not None:
            rate = Decimal(str(borrowing.fine_per_day))
        return FineQuote(
            borrowing_id=borrowing.id,
            days_overdue=days_overdue(borrowing.due_date, now),
            fine_per_day=rate,
            amount=compute_fine(borrowing.due_date, now, rate),
        )

    def preview_fine(self, *, borrowing_id: int) -> FineQuote:
        borrowing = self._get(Borrowing, borrowing_id, 'Borrowing')
        if not borrowing.is_active:
            raise AlreadyReturned(borrowing_id=borrowing_id)
        return self._quote(borrowing, self._now(), self._settings())

    def return_book(
        self,
        *,
        borrowing_id: int,
        fine_override=None,
        returned_by_id: Optional[int] = None,
    ) -> ReturnResult:
        override = None if fine_override is None else _money(fine_override, 'fine_amount')
        now = self._now()
        with self._transaction('Return'):
            borrowing = self._get(Borrowing, borrowing_id, 'Borrowing')
            if not borrowing.is_active:
                raise AlreadyReturned(borrowing_id=borrowing_id)
            quote = self._quote(borrowing, now, self._settings())
            fine = quote.amount if override is None else override
            result = db.session.execute(
                update(Borrowing)
                .where(Borrowing.id == borrowing.id, Borrowing.returned_at.is_(None))
                .values(returned_at=now, fine_amount=fine),
                execution_options=UNSYNCED,
            )
            if result.rowcount != 1:
                raise AlreadyReturned(borrowing_id=borrowing_id)
            self._put_back_copy(borrowing.book_id)
            record_activity(
                'book_returned',
                'borrowing',
                borrowing.id,
                user_id=returned_by_id,
                computed_fine=quote.amount,
                fine_amount=fine,
            )
        if override is not None and override != quote.amount:
            current_app.logger.info(
                'Borrowing %s returned with fine override %s (computed %s)', borrowing_id, override, quote.amount
            )
        else:
            current_app.logger.info('Borrowing %s returned, fine %s', borrowing_id, fine)
        return ReturnResult(borrowing=borrowing, book=borrowing.book, quote=quote, fine_amount=fine)

    def mark_fine_paid(self, *, borrowing_id: int, paid: bool = True, user_id: Optional[int] = None) -> Borrowing:
        with self._transaction('Fine payment'):
            borrowing = self._get(Borrowing, borrowing_id, 'Borrowing')
            if borrowing.is_active:
                raise ValidationError('Fines can only be settled after the book is returned.', borrowing_id=borrowing_id)
            borrowing.fine_paid = bool(paid)
            record_activity('fine_paid' if paid else 'fine_unpaid', 'borrowing', borrowing.id, user_id=user_id)
        return borrowing

    # -- reads ----------------------------------------------------------

    def list_requests(self, *, status: Optional[str] = None, student_id: Optional[int] = None):
        query = BorrowRequest.query
        if status == 'reviewed':
            query = query.filter(BorrowRequest.status != REQUEST_PENDING)
        elif status:
            if status not in REQUEST_STATUSES:
                raise ValidationError(f'Unknown request status: {status}')
            query = query.filter(BorrowRequest.status == status)
        if student_id is not None:
            query = query.filter(BorrowRequest.student_id == student_id)
        return query.order_by(BorrowRequest.requested_at.desc(), BorrowRequest.id.desc()).all()

    def list_borrowings(self, *, state: Optional[str] = None, student_id: Optional[int] = None, limit: int = 200):
        query = Borrowing.query
        if student_id is not None:
            query = query.filter(Borrowing.student_id == student_id)
        if state is None:
            return query.order_by(Borrowing.borrowed_at.desc(), Borrowing.id.desc()).limit(limit).all()
        if state not in BORROWING_STATES:
            raise ValidationError(f'Unknown borrowing state: {state}')
        if state == 'returned':
            query = query.filter(Borrowing.returned_at.isnot(None))
            return query.order_by(Borrowing.returned_at.desc()).limit(limit).all()
        query = query.filter(Borrowing.returned_at.is_(None))
        if state == 'overdue':
            query = query.filter(Borrowing.due_date < self._now())
        return query.order_by(Borrowing.due_date.asc()).limit(limit).all()

    def library_stats(self, popular_limit: int = 5) -> dict:
        now = self._now()
        active = Borrowing.query.filter(Borrowing.returned_at.is_(None))
        unpaid = (
            db.session.query(func.coalesce(func.sum(Borrowing.fine_amount), 0))
            .filter(Borrowing.returned_at.isnot(None), Borrowing.fine_paid.is_(False))
            .scalar()
        )
        popular = Book.query.order_by(Book.times_borrowed.desc(), Book.title).limit(popular_limit).all()
        return {
            'total_books': Book.query.count(),
            'active_students': Student.query.filter_by(is_active=True).count(),
            'borrowed_books': active.count(),
            'overdue_books': active.filter(Borrowing.due_date < now).count(),
            'pending_requests': BorrowRequest.query.filter_by(status=REQUEST_PENDING).count(),
            'unpaid_fines': f'{Decimal(str(unpaid)):.2f}',
            'popular_books': [book.to_dict() for book in popular],
        }
