import datetime
from decimal import Decimal

import pytest

from sqlalchemy import update

from models import db, ActivityLog, Book, Borrowing, BorrowRequest, Student, as_utc
from services.errors import (
    AlreadyReturned,
    AlreadyReviewed,
    BorrowLimitReached,
    ConsistencyViolation,
    DuplicateRequest,
    InactiveStudent,
    NoCopiesAvailable,
    NotFound,
    ValidationError,
)
from services.settings import LibrarySettings


def _book(book_id):
    db.session.expire_all()
    return db.session.get(Book, book_id)


def test_submit_request_creates_pending_without_touching_inventory(service, make_book, make_student, clock):
    book_id = make_book(quantity=2)
    student_id = make_student()

    req = service.submit_request(student_id=student_id, book_id=book_id)

    assert req.status == 'pending'
    assert as_utc(req.requested_at) == clock.now
    book = _book(book_id)
    assert book.available_quantity == 2
    assert book.times_borrowed == 0


def test_second_pending_request_for_same_pair_is_duplicate(service, make_book, make_student):
    book_id = make_book()
    student_id = make_student()
    service.submit_request(student_id=student_id, book_id=book_id)

    with pytest.raises(DuplicateRequest):
        service.submit_request(student_id=student_id, book_id=book_id)
    assert BorrowRequest.query.filter_by(student_id=student_id, book_id=book_id).count() == 1


def test_request_again_after_cancel_is_allowed(service, make_book, make_student):
    book_id = make_book()
    student_id = make_student()
    first = service.submit_request(student_id=student_id, book_id=book_id)
    service.cancel_request(request_id=first.id, by_student_id=student_id)

    second = service.submit_request(student_id=student_id, book_id=book_id)
    assert second.id != first.id
    assert second.status == 'pending'


def test_submit_request_rejects_inactive_and_unknown(service, make_book, make_student):
    book_id = make_book()
    inactive_id = make_student(is_active=False)
    active_id = make_student(name='Bob')

    with pytest.raises(InactiveStudent):
        service.submit_request(student_id=inactive_id, book_id=book_id)
    with pytest.raises(NotFound):
        service.submit_request(student_id=active_id, book_id=9999)
    with pytest.raises(NotFound):
        service.submit_request(student_id=9999, book_id=book_id)
    assert BorrowRequest.query.count() == 0


def test_approve_issues_book_and_updates_counters(service, make_book, make_student, librarian, clock):
    book_id = make_book(quantity=2)
    student_id = make_student()
    req = service.submit_request(student_id=student_id, book_id=book_id)
    clock.advance(hours=3)

    result = service.review_request(request_id=req.id, decision='approved', reviewer_id=librarian, notes=' ok ')

    assert result.request.status == 'approved'
    assert result.request.reviewed_by_id == librarian
    assert result.request.admin_notes == 'ok'
    borrowing = result.borrowing
    assert borrowing.request_id == req.id
    assert as_utc(borrowing.due_date) == clock.now + datetime.timedelta(days=14)
    assert borrowing.returned_at is None
    book = _book(book_id)
    assert book.available_quantity == 1
    assert book.times_borrowed == 1


def test_reject_never_touches_inventory(service, make_book, make_student, librarian):
    book_id = make_book(quantity=1)
    student_id = make_student()
    req = service.submit_request(student_id=student_id, book_id=book_id)

    result = service.review_request(request_id=req.id, decision='rejected', reviewer_id=librarian, notes='Lost copy')

    assert result.borrowing is None
    assert result.request.status == 'rejected'
    assert result.request.admin_notes == 'Lost copy'
    book = _book(book_id)
    assert book.available_quantity == 1
    assert book.times_borrowed == 0
    assert Borrowing.query.count() == 0


def test_reviewing_twice_fails_without_double_issue(service, make_book, make_student, librarian):
    book_id = make_book(quantity=3)
    student_id = make_student()
    req = service.submit_request(student_id=student_id, book_id=book_id)
    service.approve_request(request_id=req.id, reviewer_id=librarian)

    with pytest.raises(AlreadyReviewed):
        service.approve_request(request_id=req.id, reviewer_id=librarian)
    with pytest.raises(AlreadyReviewed):
        service.reject_request(request_id=req.id, reviewer_id=librarian)

    book = _book(book_id)
    assert book.available_quantity == 2
    assert book.times_borrowed == 1
    assert Borrowing.query.count() == 1


def test_unknown_decision_is_validation_error(service, make_book, make_student):
    req = service.submit_request(student_id=make_student(), book_id=make_book())
    with pytest.raises(ValidationError):
        service.review_request(request_id=req.id, decision='maybe')


def test_approve_with_no_copies_fails_and_leaves_request_pending(service, make_book, make_student, librarian):
    book_id = make_book(quantity=1, available=0)
    student_id = make_student()
    req = service.submit_request(student_id=student_id, book_id=book_id)

    with pytest.raises(NoCopiesAvailable):
        service.approve_request(request_id=req.id, reviewer_id=librarian)

    db.session.expire_all()
    assert db.session.get(BorrowRequest, req.id).status == 'pending'
    assert db.session.get(BorrowRequest, req.id).reviewed_at is None
    assert Borrowing.query.count() == 0
    assert _book(book_id).available_quantity == 0
    assert ActivityLog.query.filter_by(action='request_approved').count() == 0


def test_last_copy_scenario_two_students(service, make_book, make_student, librarian):
    book_id = make_book(quantity=1)
    alice = make_student('Alice')
    bob = make_student('Bob')

    req_a = service.submit_request(student_id=alice, book_id=book_id)
    result = service.approve_request(request_id=req_a.id, reviewer_id=librarian)
    borrowing_a = result.borrowing.id
    book = _book(book_id)
    assert (book.available_quantity, book.times_borrowed) == (0, 1)

    req_b = service.submit_request(student_id=bob, book_id=book_id)
    with pytest.raises(NoCopiesAvailable):
        service.approve_request(request_id=req_b.id, reviewer_id=librarian)

    service.return_book(borrowing_id=borrowing_a)
    assert _book(book_id).available_quantity == 1

    result_b = service.approve_request(request_id=req_b.id, reviewer_id=librarian)
    assert result_b.borrowing.student_id == bob
    book = _book(book_id)
    assert (book.available_quantity, book.times_borrowed) == (0, 2)


def test_approve_rechecks_student_is_still_active(service, make_book, make_student, librarian):
    book_id = make_book()
    student_id = make_student()
    req = service.submit_request(student_id=student_id, book_id=book_id)
    db.session.get(Student, student_id).is_active = False
    db.session.commit()

    with pytest.raises(InactiveStudent):
        service.approve_request(request_id=req.id, reviewer_id=librarian)
    assert _book(book_id).available_quantity == 1


def test_issue_book_directly(service, make_book, make_student, clock):
    book_id = make_book(quantity=2)
    student_id = make_student()

    result = service.issue_book(book_id=book_id, student_id=student_id, days=7)

    assert as_utc(result.borrowing.due_date) == clock.now + datetime.timedelta(days=7)
    assert result.borrowing.request_id is None
    assert result.borrowing.fine_per_day == Decimal('0.50')
    book = _book(book_id)
    assert (book.available_quantity, book.times_borrowed) == (1, 1)


def test_issue_book_defaults_to_max_borrow_days(service, make_book, make_student, clock, library_settings):
    library_settings['value'] = LibrarySettings(Decimal('1.00'), 21, 3)
    result = service.issue_book(book_id=make_book(), student_id=make_student())
    assert as_utc(result.borrowing.due_date) == clock.now + datetime.timedelta(days=21)


@pytest.mark.parametrize('days', [0, -3, 'abc', 2.5, True, 3651, 5_000_000])
def test_issue_book_rejects_bad_days(service, make_book, make_student, days):
    book_id = make_book()
    with pytest.raises(ValidationError):
        service.issue_book(book_id=book_id, student_id=make_student(), days=days)
    assert _book(book_id).available_quantity == 1


def test_issue_book_guards(service, make_book, make_student):
    empty = make_book(quantity=1, available=0)
    with pytest.raises(NoCopiesAvailable):
        service.issue_book(book_id=empty, student_id=make_student(), days=7)
    with pytest.raises(InactiveStudent):
        service.issue_book(book_id=make_book(), student_id=make_student(is_active=False), days=7)
    assert Borrowing.query.count() == 0
    assert _book(empty).available_quantity == 0


def test_borrow_limit_per_student(service, make_book, make_student, library_settings):
    library_settings['value'] = LibrarySettings(Decimal('0.50'), 14, 2)
    student_id = make_student()
    service.issue_book(book_id=make_book('A'), student_id=student_id)
    service.issue_book(book_id=make_book('B'), student_id=student_id)
    third = make_book('C')

    with pytest.raises(BorrowLimitReached):
        service.issue_book(book_id=third, student_id=student_id)
    assert _book(third).available_quantity == 1


def test_return_on_time_has_no_fine(service, make_book, make_student, clock):
    book_id = make_book()
    borrowing = service.issue_book(book_id=book_id, student_id=make_student(), days=14).borrowing
    clock.advance(days=14)

    result = service.return_book(borrowing_id=borrowing.id)

    assert result.fine_amount == Decimal('0.00')
    assert as_utc(result.borrowing.returned_at) == clock.now
    book = _book(book_id)
    assert book.available_quantity == 1
    assert book.times_borrowed == 1


def test_return_five_days_late_is_charged(service, make_book, make_student, clock):
    borrowing = service.issue_book(book_id=make_book(), student_id=make_student(), days=14).borrowing
    clock.advance(days=19, hours=5)

    result = service.return_book(borrowing_id=borrowing.id)

    assert result.quote.days_overdue == 5
    assert result.fine_amount == Decimal('2.50')
    assert db.session.get(Borrowing, borrowing.id).fine_amount == Decimal('2.50')


def test_fine_uses_rate_at_return_time(service, make_book, make_student, clock, library_settings):
    borrowing = service.issue_book(book_id=make_book(), student_id=make_student(), days=1).borrowing
    library_settings['value'] = LibrarySettings(Decimal('2.00'), 14, 3)
    clock.advance(days=4)

    assert service.return_book(borrowing_id=borrowing.id).fine_amount == Decimal('6.00')


def test_fine_rate_can_be_locked_at_issue(app, service, make_book, make_student, clock, library_settings):
    app.config['LOCK_FINE_RATE_AT_ISSUE'] = True
    borrowing = service.issue_book(book_id=make_book(), student_id=make_student(), days=1).borrowing
    library_settings['value'] = LibrarySettings(Decimal('2.00'), 14, 3)
    clock.advance(days=4)

    assert service.return_book(borrowing_id=borrowing.id).fine_amount == Decimal('1.50')


def test_return_with_fine_override(service, make_book, make_student, clock):
    borrowing = service.issue_book(book_id=make_book(), student_id=make_student(), days=1).borrowing
    clock.advance(days=11)

    result = service.return_book(borrowing_id=borrowing.id, fine_override='1')

    assert result.quote.amount == Decimal('5.00')
    assert result.fine_amount == Decimal('1.00')


@pytest.mark.parametrize('override', [-2, '1e30', '100000000', 'NaN', 'Infinity', 'a lot'])
def test_bad_fine_override_is_rejected(service, make_book, make_student, clock, override):
    book_id = make_book()
    borrowing = service.issue_book(book_id=book_id, student_id=make_student(), days=1).borrowing
    clock.advance(days=3)

    with pytest.raises(ValidationError):
        service.return_book(borrowing_id=borrowing.id, fine_override=override)
    assert db.session.get(Borrowing, borrowing.id).returned_at is None
    assert _book(book_id).available_quantity == 0


def test_returning_twice_fails_and_increments_once(service, make_book, make_student):
    book_id = make_book(quantity=2)
    borrowing = service.issue_book(book_id=book_id, student_id=make_student(), days=3).borrowing
    service.return_book(borrowing_id=borrowing.id)

    with pytest.raises(AlreadyReturned):
        service.return_book(borrowing_id=borrowing.id)
    assert _book(book_id).available_quantity == 2


def test_over_return_is_a_consistency_violation(service, make_book, make_student):
    book_id = make_book(quantity=1)
    borrowing = service.issue_book(book_id=book_id, student_id=make_student(), days=3).borrowing
    # simulate an earlier accounting error
    db.session.get(Book, book_id).available_quantity = 1
    db.session.commit()

    with pytest.raises(ConsistencyViolation):
        service.return_book(borrowing_id=borrowing.id)
    assert db.session.get(Borrowing, borrowing.id).returned_at is None
    assert _book(book_id).available_quantity == 1


def test_over_return_clamps_when_not_strict(app, service, make_book, make_student):
    app.config['STRICT_INVENTORY'] = False
    book_id = make_book(quantity=1)
    borrowing = service.issue_book(book_id=book_id, student_id=make_student(), days=3).borrowing
    db.session.get(Book, book_id).available_quantity = 1
    db.session.commit()

    service.return_book(borrowing_id=borrowing.id)
    assert db.session.get(Borrowing, borrowing.id).returned_at is not None
    assert _book(book_id).available_quantity == 1


def test_preview_fine_does_not_commit(service, make_book, make_student, clock):
    book_id = make_book()
    borrowing = service.issue_book(book_id=book_id, student_id=make_student(), days=2).borrowing
    clock.advance(days=5)

    quote = service.preview_fine(borrowing_id=borrowing.id)

    assert quote.days_overdue == 3
    assert quote.amount == Decimal('1.50')
    assert quote.requires_confirmation
    assert db.session.get(Borrowing, borrowing.id).returned_at is None
    assert _book(book_id).available_quantity == 0


def test_fine_paid_only_after_return(service, make_book, make_student, clock):
    borrowing = service.issue_book(book_id=make_book(), student_id=make_student(), days=1).borrowing
    with pytest.raises(ValidationError):
        service.mark_fine_paid(borrowing_id=borrowing.id)

    clock.advance(days=3)
    service.return_book(borrowing_id=borrowing.id)
    paid = service.mark_fine_paid(borrowing_id=borrowing.id)
    assert paid.fine_paid is True
    assert paid.fine_amount == Decimal('1.00')


def test_cancel_request_rules(service, make_book, make_student, librarian):
    book_id = make_book()
    alice = make_student('Alice')
    bob = make_student('Bob')
    req = service.submit_request(student_id=alice, book_id=book_id)

    with pytest.raises(NotFound):
        service.cancel_request(request_id=req.id, by_student_id=bob)

    cancelled = service.cancel_request(request_id=req.id, by_student_id=alice)
    assert cancelled.status == 'cancelled'
    with pytest.raises(AlreadyReviewed):
        service.cancel_request(request_id=req.id, by_student_id=alice)
    with pytest.raises(AlreadyReviewed):
        service.approve_request(request_id=req.id, reviewer_id=librarian)
    assert _book(book_id).available_quantity == 1


def test_listing_and_overdue_on_read(service, make_book, make_student, clock):
    student_id = make_student()
    early = service.issue_book(book_id=make_book('A'), student_id=student_id, days=2).borrowing.id
    late = service.issue_book(book_id=make_book('B'), student_id=student_id, days=10).borrowing.id
    done = service.issue_book(book_id=make_book('C'), student_id=student_id, days=10).borrowing.id
    service.return_book(borrowing_id=done)
    clock.advance(days=5)

    assert [b.id for b in service.list_borrowings(state='active')] == [early, late]
    assert [b.id for b in service.list_borrowings(state='overdue')] == [early]
    assert [b.id for b in service.list_borrowings(state='returned')] == [done]
    with pytest.raises(ValidationError):
        service.list_borrowings(state='lost')

    stats = service.library_stats()
    assert stats['borrowed_books'] == 2
    assert stats['overdue_books'] == 1
    assert stats['total_books'] == 3


def test_transitions_are_recorded_in_activity_log(service, make_book, make_student, librarian):
    req = service.submit_request(student_id=make_student(), book_id=make_book())
    result = service.approve_request(request_id=req.id, reviewer_id=librarian)
    service.return_book(borrowing_id=result.borrowing.id, returned_by_id=librarian)

    actions = [entry.action for entry in ActivityLog.query.order_by(ActivityLog.id).all()]
    assert actions == ['request_submitted', 'request_approved', 'book_returned']


# -- races: another transaction changes the row after we read it -----------


def _behind_the_session(statement):
    db.session.execute(statement, execution_options={'synchronize_session': False})


def test_copy_taken_after_read_is_not_lent_twice(service, make_book, make_student):
    book_id = make_book(quantity=1)
    student_id = make_student()
    book = db.session.get(Book, book_id)
    assert book.available_quantity == 1

    _behind_the_session(update(Book).where(Book.id == book_id).values(available_quantity=0))
    assert book.available_quantity == 1  # stale in the session

    with pytest.raises(NoCopiesAvailable):
        service.issue_book(book_id=book_id, student_id=student_id, days=7)
    assert Borrowing.query.count() == 0


def test_request_reviewed_after_read_loses_the_status_flip(service, make_book, make_student, librarian):
    book_id = make_book(quantity=1)
    req = service.submit_request(student_id=make_student(), book_id=book_id)
    stale = db.session.get(BorrowRequest, req.id)
    assert stale.status == 'pending'

    _behind_the_session(update(BorrowRequest).where(BorrowRequest.id == req.id).values(status='rejected'))
    assert stale.status == 'pending'

    with pytest.raises(AlreadyReviewed):
        service.approve_request(request_id=req.id, reviewer_id=librarian)
    assert Borrowing.query.count() == 0
    assert _book(book_id).available_quantity == 1


def test_identical_submission_racing_past_the_check_is_duplicate(service, make_book, make_student, monkeypatch):
    book_id = make_book()
    student_id = make_student()
    service.submit_request(student_id=student_id, book_id=book_id)
    # the competing insert commits after our lookup ran
    monkeypatch.setattr(service, '_find_pending', lambda student_id, book_id: None)

    with pytest.raises(DuplicateRequest):
        service.submit_request(student_id=student_id, book_id=book_id)
    assert BorrowRequest.query.filter_by(status='pending').count() == 1
