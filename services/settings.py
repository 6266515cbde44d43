"""Library settings lookup.

Settings live in the ``library_setting`` table as strings. They are read at
the moment an operation runs, so changing the fine rate never rewrites
existing borrowings.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping

from flask import current_app

from models import db, LibrarySetting
from .errors import ValidationError
from .fines import CENT, MAX_AMOUNT

FINE_PER_DAY = 'fine_per_day'
MAX_BORROW_DAYS = 'max_borrow_days'
MAX_BOOKS_PER_STUDENT = 'max_books_per_student'
SETTING_KEYS = (FINE_PER_DAY, MAX_BORROW_DAYS, MAX_BOOKS_PER_STUDENT)
MAX_LOAN_DAYS = 3650

FALLBACK_SETTINGS = {
    FINE_PER_DAY: '0.50',
    MAX_BORROW_DAYS: '14',
    MAX_BOOKS_PER_STUDENT: '3',
}


@dataclass(frozen=True)
class LibrarySettings:
    fine_per_day: Decimal
    max_borrow_days: int
    max_books_per_student: int

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> 'LibrarySettings':
        try:
            settings = cls(
                fine_per_day=Decimal(str(values[FINE_PER_DAY])).quantize(CENT),
                max_borrow_days=int(values[MAX_BORROW_DAYS]),
                max_books_per_student=int(values[MAX_BOOKS_PER_STUDENT]),
            )
        except KeyError as exc:
            raise ValidationError(f'Missing library setting: {exc.args[0]}') from exc
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValidationError(f'Invalid library setting value: {exc}') from exc
        if not settings.fine_per_day.is_finite() or not 0 <= settings.fine_per_day <= MAX_AMOUNT:
            raise ValidationError(f'fine_per_day must be between 0 and {MAX_AMOUNT}.')
        if not 0 < settings.max_borrow_days <= MAX_LOAN_DAYS:
            raise ValidationError(f'max_borrow_days must be between 1 and {MAX_LOAN_DAYS}.')
        if settings.max_books_per_student <= 0:
            raise ValidationError('max_books_per_student must be positive.')
        return settings

    def to_dict(self) -> dict:
        return {
            FINE_PER_DAY: f'{self.fine_per_day:.2f}',
            MAX_BORROW_DAYS: str(self.max_borrow_days),
            MAX_BOOKS_PER_STUDENT: str(self.max_books_per_student),
        }


def _defaults() -> dict:
    defaults = dict(FALLBACK_SETTINGS)
    defaults.update(current_app.config.get('LIBRARY_DEFAULT_SETTINGS') or {})
    return defaults


def load_settings() -> LibrarySettings:
    """Read the current settings, falling back to configured defaults per key."""
    values = _defaults()
    for row in LibrarySetting.query.filter(LibrarySetting.setting_key.in_(SETTING_KEYS)).all():
        values[row.setting_key] = row.setting_value
    return LibrarySettings.from_mapping(values)


def update_settings(changes: Mapping[str, object]) -> LibrarySettings:
    unknown = set(changes) - set(SETTING_KEYS)
    if unknown:
        raise ValidationError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
    merged = load_settings().to_dict()
    merged.update({key: str(value) for key, value in changes.items()})
    # validate the whole set before writing anything
    settings = LibrarySettings.from_mapping(merged)
    for key, value in changes.items():
        row = LibrarySetting.query.filter_by(setting_key=key).first()
        if row is None:
            db.session.add(LibrarySetting(setting_key=key, setting_value=str(value)))
        else:
            row.setting_value = str(value)
    return settings


def ensure_default_settings() -> None:
    """Insert any missing setting rows with their default values."""
    existing = {row.setting_key for row in LibrarySetting.query.all()}
    for key, value in _defaults().items():
        if key not in existing:
            db.session.add(LibrarySetting(setting_key=key, setting_value=value))
