"""Dewey Decimal classes and the shelf each one is kept on."""
from __future__ import annotations

import re
from typing import NamedTuple, Optional

DEWEY_PATTERN = re.compile(r'^\d{3}(\.\d+)?$')


class DeweyClass(NamedTuple):
    range: str
    name: str
    shelf_location: str


DEWEY_CLASSES = (
    DeweyClass('000-099', 'Computer Science, Information & General Works', 'General Reference Shelf'),
    DeweyClass('100-199', 'Philosophy & Psychology', 'Philosophy Shelf'),
    DeweyClass('200-299', 'Religion', 'Religion Shelf'),
    DeweyClass('300-399', 'Social Sciences', 'Social Sciences Shelf'),
    DeweyClass('400-499', 'Language', 'Language Shelf'),
    DeweyClass('500-599', 'Science', 'Science Shelf'),
    DeweyClass('600-699', 'Technology', 'Technology Shelf'),
    DeweyClass('700-799', 'Arts & Recreation', 'Arts Shelf'),
    DeweyClass('800-899', 'Literature', 'Literature Shelf'),
    DeweyClass('900-999', 'History & Geography', 'History Shelf'),
)

# common category names and a sensible starting Dewey number for each
CATEGORY_TO_DEWEY = {
    'computer science': '004',
    'computers': '004',
    'technology': '600',
    'engineering': '620',
    'information': '020',
    'philosophy': '100',
    'psychology': '150',
    'religion': '200',
    'social sciences': '300',
    'politics': '320',
    'economics': '330',
    'law': '340',
    'education': '370',
    'language': '400',
    'english': '420',
    'french': '440',
    'science': '500',
    'mathematics': '510',
    'math': '510',
    'physics': '530',
    'chemistry': '540',
    'biology': '570',
    'medicine': '610',
    'health': '613',
    'agriculture': '630',
    'cooking': '641',
    'arts': '700',
    'music': '780',
    'sports': '796',
    'literature': '800',
    'fiction': '813',
    'poetry': '811',
    'drama': '812',
    'history': '900',
    'geography': '910',
    'biography': '920',
}


def is_dewey_number(value) -> bool:
    return isinstance(value, str) and bool(DEWEY_PATTERN.match(value))


def dewey_class(dewey_number) -> Optional[DeweyClass]:
    """Return the hundreds class a call number belongs to, or None."""
    if not is_dewey_number(dewey_number):
        return None
    return DEWEY_CLASSES[int(dewey_number[0])]


def shelf_location_for(dewey_number) -> Optional[str]:
    cls = dewey_class(dewey_number)
    return cls.shelf_location if cls else None


def suggest_dewey_number(category_name: str) -> Optional[str]:
    name = (category_name or '').strip().lower()
    if not name:
        return None
    if name in CATEGORY_TO_DEWEY:
        return CATEGORY_TO_DEWEY[name]
    for key, number in CATEGORY_TO_DEWEY.items():
        if key in name or name in key:
            return number
    return None
