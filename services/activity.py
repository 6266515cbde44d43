"""Audit trail written alongside each state change."""
from __future__ import annotations

from typing import Optional

from models import db, ActivityLog


def record_activity(
    action: str,
    entity_type: str,
    entity_id: Optional[int] = None,
    *,
    user_id: Optional[int] = None,
    **details,
) -> ActivityLog:
    # Added to the caller's session; committed or rolled back with it.
    entry = ActivityLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details={key: str(value) for key, value in details.items() if value is not None} or None,
    )
    db.session.add(entry)
    return entry


def recent_activity(limit: int = 100):
    return ActivityLog.query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit).all()
