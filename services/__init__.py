"""Service layer package for encapsulating business logic."""

from .borrowing import BorrowService, BorrowResult, ReturnResult, ReviewResult  # noqa: F401
from .errors import BorrowServiceError  # noqa: F401
from .settings import LibrarySettings, load_settings, update_settings  # noqa: F401
from .auth import login_user, logout_user, login_required, admin_required, student_required, get_current_user  # noqa: F401
