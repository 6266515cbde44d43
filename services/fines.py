"""Overdue fine arithmetic."""
from __future__ import annotations

import datetime
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from models import as_utc

CENT = Decimal('0.01')
# largest value a Numeric(10, 2) money column holds
MAX_AMOUNT = Decimal('99999999.99')


def days_overdue(due_date: datetime.datetime, now: datetime.datetime) -> int:
    """Whole days elapsed past the due date; zero when not yet due."""
    elapsed = as_utc(now) - as_utc(due_date)
    return max(0, elapsed.days)


def compute_fine(due_date: datetime.datetime, now: datetime.datetime, fine_per_day: Decimal) -> Decimal:
    days = days_overdue(due_date, now)
    amount = (Decimal(days) * Decimal(str(fine_per_day))).quantize(CENT, rounding=ROUND_HALF_UP)
    return min(amount, MAX_AMOUNT)


@dataclass(frozen=True)
class FineQuote:
    borrowing_id: int
    days_overdue: int
    fine_per_day: Decimal
    amount: Decimal

    @property
    def requires_confirmation(self) -> bool:
        return self.amount > 0

    def to_dict(self) -> dict:
        return {
            'borrowing_id': self.borrowing_id,
            'days_overdue': self.days_overdue,
            'fine_per_day': f'{self.fine_per_day:.2f}',
            'amount': f'{self.amount:.2f}',
            'requires_confirmation': self.requires_confirmation,
        }
