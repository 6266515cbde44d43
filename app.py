from __future__ import annotations

import os

from flask import Flask, g, jsonify, request
from flask_wtf import CSRFProtect
from flask_wtf.csrf import generate_csrf

from config import BaseConfig, config_by_name
from models import db
from services import catalog, classification
from services.activity import recent_activity
from services.auth import (
    admin_required,
    authenticate,
    get_current_user,
    login_required,
    login_user,
    logout_user,
    register_student,
    student_required,
)
from services.borrowing import BorrowService
from services.errors import BorrowServiceError, ValidationError
from services.settings import load_settings, update_settings

csrf = CSRFProtect()


def _load_config(app: Flask, config_name: str | None, test_config: dict | None) -> None:
    resolved_name = config_name or os.environ.get('FLASK_CONFIG', 'development')
    config_cls = config_by_name.get(resolved_name, BaseConfig)
    app.config.from_object(config_cls)
    if test_config:
        app.config.update(test_config)


def error_response(exc: BorrowServiceError):
    return jsonify(exc.to_dict()), exc.status_code


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def _int_arg(data: dict, key: str) -> int:
    value = data.get(key)
    if isinstance(value, bool):
        raise ValidationError(f'{key} must be an integer.')
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f'{key} must be an integer.') from exc


def _patch_fields(allowed) -> dict:
    fields = _payload()
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValidationError(f"Unknown field(s): {', '.join(sorted(unknown))}")
    return fields


def _current_user_id():
    user = getattr(g, 'current_user', None)
    return user.id if user else None


def create_app(config_name: str | None = None, test_config: dict | None = None):
    if isinstance(config_name, dict) and test_config is None:
        test_config = config_name
        config_name = None
    app = Flask(__name__)
    _load_config(app, config_name, test_config)
    db.init_app(app)
    csrf.init_app(app)
    borrow_service = BorrowService()

    @app.before_request
    def bind_current_user():
        g.current_user = get_current_user()

    @app.after_request
    def set_security_headers(response):
        response.headers.setdefault('X-Frame-Options', 'DENY')
        response.headers.setdefault('X-Content-Type-Options', 'nosniff')
        response.headers.setdefault('Referrer-Policy', 'no-referrer-when-downgrade')
        response.headers.setdefault('Content-Security-Policy', "default-src 'none'; frame-ancestors 'none'")
        return response

    @app.errorhandler(BorrowServiceError)
    def handle_service_error(exc):
        return error_response(exc)

    @app.route('/api/csrf-token')
    def csrf_token():
        return jsonify({'csrf_token': generate_csrf()})

    # -- accounts -------------------------------------------------------

    @app.route('/register', methods=['POST'])
    def register():
        data = _payload()
        user = register_student(
            student_number=data.get('student_number'),
            username=data.get('username'),
            password=data.get('password'),
        )
        login_user(user)
        app.logger.info('Student %s registered as %s', user.student.student_number, user.username)
        return jsonify(user.to_dict()), 201

    @app.route('/login', methods=['POST'])
    def login():
        data = _payload()
        user = authenticate(data.get('username'), data.get('password'))
        if not user:
            return jsonify({'error': 'invalid_credentials', 'message': 'Wrong username or password.'}), 401
        if user.student is not None and not user.student.is_active:
            return jsonify({'error': 'inactive_student', 'message': 'This student account is inactive.'}), 403
        login_user(user)
        return jsonify(user.to_dict())

    @app.route('/logout', methods=['POST'])
    def logout():
        logout_user()
        return jsonify({'ok': True})

    @app.route('/api/me')
    @login_required
    def me():
        return jsonify(g.current_user.to_dict())

    # -- catalog --------------------------------------------------------

    @app.route('/api/books')
    def api_books():
        available_only = request.args.get('available') in ('1', 'true', 'yes')
        category_id = _int_arg(request.args, 'category_id') if request.args.get('category_id') else None
        books = catalog.search_books(
            request.args.get('q', ''), available_only=available_only, category_id=category_id
        )
        return jsonify([b.to_dict() for b in books])

    @app.route('/api/books/popular')
    def api_popular_books():
        return jsonify([b.to_dict() for b in catalog.popular_books()])

    @app.route('/api/books/new')
    def api_new_books():
        return jsonify([b.to_dict() for b in catalog.new_arrivals()])

    @app.route('/api/books/<int:book_id>')
    def api_book(book_id: int):
        book = catalog.get_book(book_id)
        body = book.to_dict()
        dewey = classification.dewey_class(book.dewey_number)
        body['dewey_class'] = dewey.name if dewey else None
        return jsonify(body)

    @app.route('/api/books/<int:book_id>/related')
    def api_related_books(book_id: int):
        return jsonify([b.to_dict() for b in catalog.related_books(book_id)])

    @app.route('/api/categories')
    def api_categories():
        return jsonify([c.to_dict() for c in catalog.list_categories()])

    # -- student --------------------------------------------------------

    @app.route('/api/requests', methods=['POST'])
    @student_required
    def submit_request():
        data = _payload()
        book_id = _int_arg(data, 'book_id')
        borrow_request = borrow_service.submit_request(student_id=g.current_user.student_id, book_id=book_id)
        return jsonify(borrow_request.to_dict()), 201

    @app.route('/api/requests/mine')
    @student_required
    def my_requests():
        items = borrow_service.list_requests(student_id=g.current_user.student_id)
        return jsonify([r.to_dict() for r in items])

    @app.route('/api/requests/<int:request_id>/cancel', methods=['POST'])
    @student_required
    def cancel_request(request_id: int):
        borrow_request = borrow_service.cancel_request(request_id=request_id, by_student_id=g.current_user.student_id)
        return jsonify(borrow_request.to_dict())

    @app.route('/api/borrowings/mine')
    @student_required
    def my_borrowings():
        state = request.args.get('state') or None
        items = borrow_service.list_borrowings(state=state, student_id=g.current_user.student_id)
        return jsonify([b.to_dict() for b in items])

    # -- admin: requests and loans --------------------------------------

    @app.route('/api/admin/requests')
    @admin_required
    def admin_requests():
        status = request.args.get('status', 'pending') or None
        return jsonify([r.to_dict() for r in borrow_service.list_requests(status=status)])

    @app.route('/api/admin/requests/<int:request_id>/review', methods=['POST'])
    @admin_required
    def admin_review_request(request_id: int):
        data = _payload()
        result = borrow_service.review_request(
            request_id=request_id,
            decision=data.get('decision'),
            reviewer_id=_current_user_id(),
            notes=data.get('notes'),
        )
        body = {'request': result.request.to_dict()}
        if result.borrowing is not None:
            body['borrowing'] = result.borrowing.to_dict()
        return jsonify(body)

    @app.route('/api/admin/borrowings')
    @admin_required
    def admin_borrowings():
        state = request.args.get('state') or None
        return jsonify([b.to_dict() for b in borrow_service.list_borrowings(state=state)])

    @app.route('/api/admin/borrowings', methods=['POST'])
    @admin_required
    def admin_issue_book():
        data = _payload()
        result = borrow_service.issue_book(
            book_id=_int_arg(data, 'book_id'),
            student_id=_int_arg(data, 'student_id'),
            days=data.get('days'),
            issued_by_id=_current_user_id(),
        )
        return jsonify(result.borrowing.to_dict()), 201

    @app.route('/api/admin/borrowings/<int:borrowing_id>/fine')
    @admin_required
    def admin_fine_quote(borrowing_id: int):
        return jsonify(borrow_service.preview_fine(borrowing_id=borrowing_id).to_dict())

    @app.route('/api/admin/borrowings/<int:borrowing_id>/return', methods=['POST'])
    @admin_required
    def admin_return_book(borrowing_id: int):
        data = _payload()
        fine_override = data.get('fine_amount')
        if fine_override is None and not catalog.parse_flag(data.get('confirm', False), 'confirm'):
            # a nonzero fine needs the librarian to confirm or override it
            quote = borrow_service.preview_fine(borrowing_id=borrowing_id)
            if quote.requires_confirmation:
                return jsonify({
                    'error': 'fine_confirmation_required',
                    'message': 'This book is overdue; confirm or override the fine.',
                    'quote': quote.to_dict(),
                }), 409
        result = borrow_service.return_book(
            borrowing_id=borrowing_id,
            fine_override=fine_override,
            returned_by_id=_current_user_id(),
        )
        return jsonify({
            'borrowing': result.borrowing.to_dict(),
            'book': result.book.to_dict(),
            'computed_fine': f'{result.quote.amount:.2f}',
        })

    @app.route('/api/admin/borrowings/<int:borrowing_id>/fine-paid', methods=['POST'])
    @admin_required
    def admin_fine_paid(borrowing_id: int):
        data = _payload()
        borrowing = borrow_service.mark_fine_paid(
            borrowing_id=borrowing_id,
            paid=catalog.parse_flag(data.get('paid', True), 'paid'),
            user_id=_current_user_id(),
        )
        return jsonify(borrowing.to_dict())

    # -- admin: catalog, students, settings -----------------------------

    @app.route('/api/admin/books', methods=['POST'])
    @admin_required
    def admin_add_book():
        data = _payload()
        book = catalog.add_book(
            title=data.get('title'),
            author=data.get('author'),
            quantity=data.get('quantity', 1),
            isbn=data.get('isbn'),
            category_id=data.get('category_id'),
            dewey_number=data.get('dewey_number'),
            shelf_location=data.get('shelf_location'),
            user_id=_current_user_id(),
        )
        return jsonify(book.to_dict()), 201

    @app.route('/api/admin/books/<int:book_id>', methods=['PATCH'])
    @admin_required
    def admin_update_book(book_id: int):
        fields = _patch_fields(catalog.BOOK_FIELDS)
        book = catalog.update_book(book_id, user_id=_current_user_id(), **fields)
        return jsonify(book.to_dict())

    @app.route('/api/admin/books/<int:book_id>', methods=['DELETE'])
    @admin_required
    def admin_delete_book(book_id: int):
        catalog.delete_book(book_id, user_id=_current_user_id())
        return jsonify({'ok': True})

    @app.route('/api/admin/categories', methods=['POST'])
    @admin_required
    def admin_add_category():
        data = _payload()
        category = catalog.add_category(
            name=data.get('name'),
            description=data.get('description'),
            user_id=_current_user_id(),
        )
        body = category.to_dict()
        body['suggested_dewey_number'] = classification.suggest_dewey_number(category.name)
        return jsonify(body), 201

    @app.route('/api/admin/categories/<int:category_id>', methods=['PATCH'])
    @admin_required
    def admin_update_category(category_id: int):
        fields = _patch_fields(catalog.CATEGORY_FIELDS)
        category = catalog.update_category(category_id, user_id=_current_user_id(), **fields)
        return jsonify(category.to_dict())

    @app.route('/api/admin/categories/<int:category_id>', methods=['DELETE'])
    @admin_required
    def admin_delete_category(category_id: int):
        catalog.delete_category(category_id, user_id=_current_user_id())
        return jsonify({'ok': True})

    @app.route('/api/admin/students')
    @admin_required
    def admin_students():
        active_only = request.args.get('active') in ('1', 'true', 'yes')
        students = catalog.find_students(request.args.get('q', ''), active_only=active_only)
        return jsonify([s.to_dict() for s in students])

    @app.route('/api/admin/students', methods=['POST'])
    @admin_required
    def admin_add_student():
        data = _payload()
        student = catalog.add_student(
            student_number=data.get('student_number'),
            name=data.get('name'),
            email=data.get('email'),
            phone=data.get('phone'),
            class_grade=data.get('class_grade'),
            user_id=_current_user_id(),
        )
        return jsonify(student.to_dict()), 201

    @app.route('/api/admin/students/<int:student_id>', methods=['PATCH'])
    @admin_required
    def admin_update_student(student_id: int):
        fields = _patch_fields(catalog.STUDENT_FIELDS)
        student = catalog.update_student(student_id, user_id=_current_user_id(), **fields)
        return jsonify(student.to_dict())

    @app.route('/api/admin/settings')
    @admin_required
    def admin_settings():
        return jsonify(load_settings().to_dict())

    @app.route('/api/admin/settings', methods=['PUT'])
    @admin_required
    def admin_update_settings():
        settings = update_settings(_payload())
        db.session.commit()
        app.logger.info('Library settings updated by user %s: %s', _current_user_id(), settings)
        return jsonify(settings.to_dict())

    @app.route('/api/admin/stats')
    @admin_required
    def admin_stats():
        return jsonify(borrow_service.library_stats())

    @app.route('/api/admin/activity')
    @admin_required
    def admin_activity():
        try:
            limit = min(max(int(request.args.get('limit', 100)), 1), 500)
        except (TypeError, ValueError):
            limit = 100
        return jsonify([entry.to_dict() for entry in recent_activity(limit)])

    return app


if __name__ == '__main__':
    application = create_app()
    with application.app_context():
        db.create_all()
    application.run(debug=True)
