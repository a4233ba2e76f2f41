from __future__ import annotations

from enum import Enum


class NotificationType(str, Enum):
    APPROVAL_INITIATED = 'approval_initiated'
    APPROVAL_VOTE_CAST = 'approval_vote_cast'
    MILESTONE_COMPLETED = 'milestone_completed'
    MILESTONE_REJECTED = 'milestone_rejected'


def normalize_notification_type(value: str | NotificationType) -> str:
    if isinstance(value, NotificationType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('notification type is required')
    return text
